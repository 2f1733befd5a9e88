from config.constants import BANK_ACCOUNT_REGEX, IFSC_REGEX
from utils.errors import ValidationError


def normalize_pincode(pincode) -> str:
    return str(pincode or "").strip().casefold()


def is_serviceable(product: dict, pincode: str) -> bool:
    """
    A product with no serviceable pincode list is not serviceable
    anywhere.
    """
    pincodes = product.get("serviceable_pincodes") or []
    target = normalize_pincode(pincode)
    return bool(target) and any(normalize_pincode(p) == target for p in pincodes)


def validate_bank_details(bank: dict | None) -> dict:
    bank = bank or {}
    account_number = (bank.get("account_number") or "").strip()
    ifsc_code = (bank.get("ifsc_code") or "").strip().upper()

    if not BANK_ACCOUNT_REGEX.match(account_number):
        raise ValidationError("Invalid bank account number", field="bank_details.account_number")
    if not IFSC_REGEX.match(ifsc_code):
        raise ValidationError("Invalid IFSC code", field="bank_details.ifsc_code")
    if not (bank.get("account_holder_name") or "").strip():
        raise ValidationError("Account holder name is required", field="bank_details.account_holder_name")

    return {
        "account_holder_name": bank["account_holder_name"].strip(),
        "account_number": account_number,
        "ifsc_code": ifsc_code,
        "bank_name": (bank.get("bank_name") or "").strip() or None,
    }


def validate_upi_id(upi_id: str | None) -> str:
    upi_id = (upi_id or "").strip()
    if "@" not in upi_id or upi_id.startswith("@") or upi_id.endswith("@"):
        raise ValidationError("Invalid UPI ID", field="upi_id")
    return upi_id

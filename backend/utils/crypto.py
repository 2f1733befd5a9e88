import base64
import hashlib
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from config.env import BANK_DATA_ENCRYPTION_KEY, JWT_SECRET
from utils.errors import InternalError, ValidationError


# Withdrawal requests keep the driver's account number only in sealed
# form; the masked copy is what admins and the driver app get to see.


@lru_cache(maxsize=4)
def _vault(seed: str) -> Fernet:
    digest = hashlib.sha256(seed.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


def _bank_vault() -> Fernet:
    seed = (BANK_DATA_ENCRYPTION_KEY or JWT_SECRET or "").strip()
    if not seed:
        raise InternalError("Bank data encryption key is not configured", code="ENCRYPTION_KEY_MISSING")
    return _vault(seed)


def mask_account_number(account_number: str) -> str:
    return "X" * max(len(account_number) - 4, 0) + account_number[-4:]


def seal_bank_details(bank: dict) -> dict:
    """
    Turn validated bank details into the stored shape: the plain account
    number is replaced by its ciphertext and a masked copy.
    """
    account_number = bank.get("account_number")
    if not account_number:
        raise ValidationError("Bank account number missing", field="bank_details.account_number")

    sealed = {k: v for k, v in bank.items() if k != "account_number"}
    sealed["account_number_encrypted"] = _bank_vault().encrypt(account_number.encode("utf-8")).decode("utf-8")
    sealed["account_number_masked"] = mask_account_number(account_number)
    return sealed


def reveal_account_number(sealed: dict) -> str:
    token = (sealed or {}).get("account_number_encrypted")
    if not token:
        raise ValidationError("Encrypted account number missing", code="BANK_DETAILS_MISSING")
    try:
        return _bank_vault().decrypt(token.encode("utf-8")).decode("utf-8")
    except InvalidToken:
        raise InternalError("Stored account number cannot be decrypted", code="BANK_DETAILS_CORRUPT")

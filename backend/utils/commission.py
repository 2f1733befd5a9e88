from config.constants import (
    DEFAULT_PLATFORM_FEE_PERCENT,
    DEFAULT_PLATFORM_FEE_GST_RATE,
    DEFAULT_TDS_RATE,
)
from config.env import PLATFORM_STATE
from models.order import TaxType
from models.payout import CommissionType
from utils.errors import InsufficientFundsError, ValidationError
from utils.money import round_money
from utils.tax import split_tax

# ============================================================
# COMMISSION CALCULATOR (PURE)
# ============================================================
# Order of deductions is fixed:
#   line total -> promotor commission -> platform fee -> GST on fee + TDS
# Payout creation, dashboards and invoices all call these functions.

AMOUNT_FIELDS = (
    "order_amount",
    "promotor_commission",
    "seller_share",
    "platform_fee",
    "payable_amount",
    "gst_on_platform_fee",
    "cgst",
    "sgst",
    "igst",
    "tds_deduction",
    "net_amount",
)


def promotor_commission(
    commission_type: str | None,
    rate: float | None,
    line_total: float,
    quantity: int,
) -> float:
    if not commission_type or not rate:
        return 0.0

    try:
        commission_type = CommissionType(commission_type)
    except ValueError:
        raise ValidationError(f"Unknown commission type '{commission_type}'", field="commission_type")

    if commission_type == CommissionType.PERCENTAGE:
        amount = float(line_total) * float(rate) / 100
    else:
        amount = float(rate) * int(quantity)

    return max(round_money(amount), 0.0)


def calculate_line_settlement(
    line_total: float,
    quantity: int,
    *,
    commission_type: str | None = None,
    commission_rate: float | None = None,
    platform_fee_percent: float = DEFAULT_PLATFORM_FEE_PERCENT,
    gst_rate: float = DEFAULT_PLATFORM_FEE_GST_RATE,
    tds_rate: float = DEFAULT_TDS_RATE,
    seller_state: str | None = None,
    platform_state: str | None = PLATFORM_STATE,
) -> dict:
    order_amount = round_money(line_total)
    commission = promotor_commission(commission_type, commission_rate, order_amount, quantity)

    seller_share = round_money(order_amount - commission)
    platform_fee = round_money(seller_share * platform_fee_percent / 100)
    payable_amount = round_money(seller_share - platform_fee)

    fee_tax = split_tax(platform_fee, gst_rate, TaxType.EXCLUSIVE.value, platform_state, seller_state)
    gst_on_platform_fee = fee_tax["gst_amount"]
    tds_deduction = round_money(payable_amount * tds_rate / 100)
    net_amount = round_money(payable_amount - gst_on_platform_fee - tds_deduction)

    return {
        "order_amount": order_amount,
        "quantity": int(quantity),
        "promotor_commission": commission,
        "seller_share": seller_share,
        "platform_fee": platform_fee,
        "payable_amount": payable_amount,
        "gst_on_platform_fee": gst_on_platform_fee,
        "cgst": fee_tax["cgst"],
        "sgst": fee_tax["sgst"],
        "igst": fee_tax["igst"],
        "tds_deduction": tds_deduction,
        "net_amount": net_amount,
    }


def calculate_order_settlement(
    items: list[dict],
    *,
    promotor: dict | None = None,
    seller_state: str | None = None,
    platform_fee_percent: float = DEFAULT_PLATFORM_FEE_PERCENT,
    gst_rate: float = DEFAULT_PLATFORM_FEE_GST_RATE,
    tds_rate: float = DEFAULT_TDS_RATE,
    platform_state: str | None = PLATFORM_STATE,
) -> dict:
    """
    Settlement amounts for one order, summed over its lines.

    Raises InsufficientFundsError when the seller would end up with a
    negative net amount; the amount is never clamped.
    """
    commission_type = promotor.get("commission_type") if promotor else None
    commission_rate = promotor.get("commission_rate") if promotor else None

    lines = [
        calculate_line_settlement(
            float(item["price"]) * int(item["quantity"]),
            int(item["quantity"]),
            commission_type=commission_type,
            commission_rate=commission_rate,
            platform_fee_percent=platform_fee_percent,
            gst_rate=gst_rate,
            tds_rate=tds_rate,
            seller_state=seller_state,
            platform_state=platform_state,
        )
        for item in items
    ]

    totals = {field: round_money(sum(line[field] for line in lines)) for field in AMOUNT_FIELDS}
    totals["quantity"] = sum(line["quantity"] for line in lines)

    if totals["net_amount"] < 0 or any(line["net_amount"] < 0 for line in lines):
        raise InsufficientFundsError(
            "Seller net amount would be negative; check commission configuration",
            net_amount=totals["net_amount"],
            commission_type=commission_type,
            commission_rate=commission_rate,
        )

    return {
        **totals,
        "commission_type": commission_type,
        "commission_rate": commission_rate,
        "platform_fee_percent": platform_fee_percent,
        "gst_rate": gst_rate,
        "tds_rate": tds_rate,
        "lines": lines,
    }

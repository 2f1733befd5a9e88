from models.order import TaxType
from utils.errors import ValidationError
from utils.money import round_money

# ============================================================
# GST SPLITTER
# ============================================================
# Invoice lines and the GST on platform fee both go through
# split_tax(); there is no second implementation.


def normalize_state(state: str | None) -> str:
    return " ".join((state or "").split()).casefold()


def is_intra_state(seller_state: str | None, buyer_state: str | None) -> bool:
    seller = normalize_state(seller_state)
    return bool(seller) and seller == normalize_state(buyer_state)


def split_gst(gst_amount: float, seller_state: str | None, buyer_state: str | None) -> dict:
    gst_amount = round_money(gst_amount)
    if is_intra_state(seller_state, buyer_state):
        cgst = round_money(gst_amount / 2)
        return {
            "supply_type": "intra_state",
            "cgst": cgst,
            "sgst": round_money(gst_amount - cgst),
            "igst": 0.0,
        }
    return {
        "supply_type": "inter_state",
        "cgst": 0.0,
        "sgst": 0.0,
        "igst": gst_amount,
    }


def split_tax(
    amount: float,
    gst_rate: float,
    tax_type: str,
    seller_state: str | None,
    buyer_state: str | None,
) -> dict:
    """
    Taxable value, GST and its CGST/SGST or IGST components for one amount.

    inclusive: amount already contains GST, back it out.
    exclusive: GST is charged on top of amount.
    """
    if gst_rate is None or gst_rate < 0:
        raise ValidationError("GST rate must be a non-negative number", field="gst_rate")

    try:
        tax_type = TaxType(tax_type)
    except ValueError:
        raise ValidationError(f"Unknown tax type '{tax_type}'", field="tax_type")

    amount = float(amount)
    if tax_type == TaxType.INCLUSIVE:
        taxable_value = amount / (1 + gst_rate / 100)
        gst_amount = amount - taxable_value
        gross = amount
    else:
        taxable_value = amount
        gst_amount = taxable_value * gst_rate / 100
        gross = amount + gst_amount

    return {
        "tax_type": tax_type.value,
        "gst_rate": gst_rate,
        "taxable_value": round_money(taxable_value),
        "gst_amount": round_money(gst_amount),
        "gross_amount": round_money(gross),
        **split_gst(gst_amount, seller_state, buyer_state),
    }


def split_line_tax(item: dict, product: dict, seller_state: str | None, buyer_state: str | None) -> dict:
    line_total = float(item["price"]) * int(item["quantity"])
    breakdown = split_tax(
        line_total,
        float(product.get("gst_rate") or 0),
        product.get("tax_type") or TaxType.INCLUSIVE.value,
        seller_state,
        buyer_state,
    )
    return {
        "product_id": str(item["product_id"]),
        "name": product.get("name"),
        "hsn_code": product.get("hsn_code"),
        "quantity": int(item["quantity"]),
        "unit_price": float(item["price"]),
        "line_total": round_money(line_total),
        **breakdown,
    }


def build_tax_invoice(order: dict, products: dict, seller: dict) -> dict:
    seller_state = (seller.get("address") or {}).get("state")
    buyer_state = (order.get("shipping_address") or {}).get("state")

    lines = []
    for item in order["items"]:
        product = products.get(str(item["product_id"]), {})
        lines.append(split_line_tax(item, product, seller_state, buyer_state))

    totals = {
        key: round_money(sum(line[key] for line in lines))
        for key in ("line_total", "taxable_value", "gst_amount", "cgst", "sgst", "igst")
    }

    return {
        "order_id": order.get("order_id"),
        "seller": {
            "id": str(seller.get("_id")) if seller.get("_id") else None,
            "name": seller.get("business_name") or seller.get("name"),
            "gst_number": seller.get("gst_number"),
            "state": seller_state,
        },
        "buyer_state": buyer_state,
        "lines": lines,
        "totals": totals,
        "discount": order.get("discount", 0),
        "final_amount": order.get("final_amount"),
    }

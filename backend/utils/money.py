def round_money(value) -> float:
    """Round to paise. Adding 0.0 normalises -0.0."""
    return round(float(value), 2) + 0.0


def sum_money(values) -> float:
    return round_money(sum(float(v) for v in values))

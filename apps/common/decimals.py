from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

QUANTITY_PLACES = Decimal("0.001")
MONEY_PLACES = Decimal("0.01")

QUANTITY_TOLERANCE = Decimal("0.001")
MONEY_TOLERANCE = Decimal("0.01")

ZERO = Decimal("0")
ONE = Decimal("1")


def to_decimal(value, default=ZERO):
    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return default


def round_quantity(value):
    rounded = to_decimal(value).quantize(QUANTITY_PLACES, rounding=ROUND_HALF_UP)
    # -0.000 compares equal to zero but serializes with a sign.
    return rounded if rounded != 0 else ZERO.quantize(QUANTITY_PLACES)


def round_money(value):
    rounded = to_decimal(value).quantize(MONEY_PLACES, rounding=ROUND_HALF_UP)
    return rounded if rounded != 0 else ZERO.quantize(MONEY_PLACES)


def money_matches(left, right):
    return abs(to_decimal(left) - to_decimal(right)) <= MONEY_TOLERANCE


def quantity_is_zero(value):
    return round_quantity(value) == 0

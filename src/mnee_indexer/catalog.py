"""Maps MNEE payment amounts to the product they buy."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation

UNKNOWN_PRODUCT = "Unknown Product"

# Exact prices in whole MNEE. Matching is by decimal equality, never by range:
# a purchase of 48.0000001 MNEE is not "Eminem Music".
PRODUCT_CATALOG: dict[Decimal, str] = {
    Decimal("48"): "Eminem Music",
    Decimal("115"): "Blockchain Course",
    Decimal("58"): "Web3 Book",
    Decimal("45"): "R.R. Martin Book",
    Decimal("99"): "Quantum Computing",
}


def to_token_units(raw_amount: int, decimals: int = 18) -> Decimal:
    """Convert an on-chain integer amount to the token's human-readable unit, exactly."""
    # Shift the exponent directly: arithmetic would round to the context's 28 digits
    sign, digits, exponent = Decimal(int(raw_amount)).as_tuple()
    return Decimal((sign, digits, exponent - decimals))


def product_for(amount: Decimal | int | str) -> str:
    """Return the product label for a payment amount, or ``UNKNOWN_PRODUCT``."""
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError):
        return UNKNOWN_PRODUCT
    if not value.is_finite():
        return UNKNOWN_PRODUCT
    return PRODUCT_CATALOG.get(value, UNKNOWN_PRODUCT)

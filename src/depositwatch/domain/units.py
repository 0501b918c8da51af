from __future__ import annotations

from decimal import ROUND_DOWN, Decimal, InvalidOperation

from depositwatch.domain.models import Currency

MINOR_UNIT_DECIMALS: dict[Currency, int] = {
    Currency.BTC: 8,
    Currency.ETH: 18,
    Currency.DOGE: 8,
}


def minor_to_major(amount_minor: int, currency: Currency) -> Decimal:
    if amount_minor < 0:
        raise ValueError("amount_minor must be >= 0")
    return Decimal(int(amount_minor)).scaleb(-MINOR_UNIT_DECIMALS[currency]).normalize()


def major_to_minor(amount_major: Decimal | str, currency: Currency) -> int:
    """Convert a decimal explorer amount to minor units, truncating sub-unit dust."""
    try:
        value = Decimal(str(amount_major).strip())
    except InvalidOperation as exc:
        raise ValueError(f"invalid amount: {amount_major!r}") from exc
    if not value.is_finite() or value < 0:
        raise ValueError(f"invalid amount: {amount_major!r}")
    scaled = value.scaleb(MINOR_UNIT_DECIMALS[currency])
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_DOWN))


def normalize_address(address: str | None) -> str:
    return str(address or "").strip().casefold()


def addresses_match(left: str | None, right: str | None) -> bool:
    normalized_left = normalize_address(left)
    return bool(normalized_left) and normalized_left == normalize_address(right)

"""Money helpers.

All amounts are integer paise. Decimal is used only while applying a
percentage, and every result is rounded half-up (away from zero) back to
a whole paisa before it leaves this module.
"""
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import List, Sequence, Tuple, Union

Number = Union[int, str, Decimal]

HUNDRED = Decimal("100")
PAISE_PER_RUPEE = 100
BPS_PER_PERCENT = 100


def _quantize(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_paise(rupees: Number) -> int:
    """Convert a rupee amount (e.g. "12.345") to paise, half-up."""
    try:
        return _quantize(Decimal(str(rupees)) * HUNDRED)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid rupee amount: {rupees!r}") from exc


def from_paise(paise: int) -> Decimal:
    """Rupee value of a paise amount, for display only."""
    return (Decimal(paise) / HUNDRED).quantize(Decimal("0.01"))


def apply_rate(amount_paise: int, rate_percent: Number) -> int:
    """Return amount * rate / 100 rounded half-up to the nearest paisa."""
    return _quantize(Decimal(amount_paise) * Decimal(str(rate_percent)) / HUNDRED)


def extract_inclusive_tax(gross_paise: int, rate_percent: Number) -> Tuple[int, int]:
    """
    Split a tax-inclusive amount into (taxable, tax).

    taxable = round(gross / (1 + rate/100)); the remainder is tax, so the
    two always add back to gross exactly.
    """
    rate = Decimal(str(rate_percent))
    if rate <= 0:
        return gross_paise, 0
    taxable = _quantize(Decimal(gross_paise) * HUNDRED / (HUNDRED + rate))
    return taxable, gross_paise - taxable


def split_half(tax_paise: int) -> Tuple[int, int]:
    """Split tax into (cgst, sgst). CGST rounds down, SGST takes the odd paisa."""
    cgst = tax_paise // 2 if tax_paise >= 0 else -((-tax_paise) // 2)
    return cgst, tax_paise - cgst


def allocate(total: int, weights: Sequence[int]) -> List[int]:
    """
    Distribute ``total`` over ``weights`` proportionally.

    Largest-remainder method: every share is floored, then the leftover
    units go to the largest fractional parts (earlier position wins ties).
    The result always sums to ``total``. Zero total weight falls back to
    equal weights.
    """
    if not weights:
        if total:
            raise ValueError("Cannot allocate a non-zero total over no weights")
        return []
    if total < 0:
        return [-share for share in allocate(-total, weights)]

    weights = [abs(w) for w in weights]
    weight_sum = sum(weights)
    if weight_sum == 0:
        weights = [1] * len(weights)
        weight_sum = len(weights)

    shares = []
    remainders = []
    for index, weight in enumerate(weights):
        share, remainder = divmod(total * weight, weight_sum)
        shares.append(share)
        remainders.append((-remainder, index))

    leftover = total - sum(shares)
    for _, index in sorted(remainders)[:leftover]:
        shares[index] += 1
    return shares


def rate_to_bps(rate_percent: Number) -> int:
    """Percent to basis points. Rates finer than 0.01% are rejected."""
    bps = Decimal(str(rate_percent)) * BPS_PER_PERCENT
    if bps != bps.to_integral_value():
        raise ValueError(f"GST rate {rate_percent} has more than two decimals")
    return int(bps)


def bps_to_rate(bps: int) -> Decimal:
    return Decimal(bps) / BPS_PER_PERCENT


def round_to_rupee(paise: int) -> Tuple[int, int]:
    """Round to the nearest whole rupee. Returns (rounded, round_off)."""
    rounded = _quantize(Decimal(paise) / PAISE_PER_RUPEE) * PAISE_PER_RUPEE
    return rounded, rounded - paise

"""GST tax bucket engine.

Turns cart lines into per-rate tax buckets and per-line tax allocations.
Pure computation: no database access, no clock, no logging side effects
beyond debug output. Invoices are priced by ``compute_tax``; credit notes
reverse what the sale actually charged with ``reverse_returns``.

Rules:
- line gross = max(quantity * unit_price - discount, 0)
- INCLUSIVE prices carry tax inside gross; EXCLUSIVE prices add it on top
- seller and buyer in the same state -> CGST + SGST, otherwise IGST
- CGST is the bucket tax halved and rounded down, SGST takes the odd paisa
- every bucket (0% included) is reported; sums are exact to the paisa
"""
import logging
from collections import OrderedDict
from dataclasses import dataclass, replace
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from pharmabill.core.errors import invalid_input
from pharmabill.core.money import (
    allocate,
    apply_rate,
    bps_to_rate,
    extract_inclusive_tax,
    rate_to_bps,
    split_half,
)


logger = logging.getLogger(__name__)

MAX_GST_RATE_BPS = 10000


class TaxInclusion(str, Enum):
    """Whether the unit price already contains GST."""
    INCLUSIVE = "INCLUSIVE"
    EXCLUSIVE = "EXCLUSIVE"


@dataclass(frozen=True)
class CartLine:
    """One priced cart entry, as resolved by the POS."""
    product_ref: str
    product_name: str
    hsn_code: str
    quantity: int
    unit_price_paise: int
    gst_rate_percent: Decimal
    tax_inclusion: TaxInclusion = TaxInclusion.EXCLUSIVE
    discount_paise: int = 0
    discount_percent: Optional[Decimal] = None
    batch_ref: Optional[str] = None
    unit_cost_paise: Optional[int] = None

    @property
    def gst_rate_bps(self) -> int:
        return rate_to_bps(self.gst_rate_percent)

    @property
    def list_amount_paise(self) -> int:
        return self.quantity * self.unit_price_paise

    def resolved_discount_paise(self) -> int:
        """Discount in paise, converting a percent discount when given."""
        if self.discount_percent is not None:
            return apply_rate(self.list_amount_paise, self.discount_percent)
        return self.discount_paise


@dataclass(frozen=True)
class LineAllocation:
    """Tax outcome for a single cart line."""
    position: int
    gst_rate_bps: int
    discount_paise: int
    taxable_paise: int
    cgst_paise: int
    sgst_paise: int
    igst_paise: int

    @property
    def tax_paise(self) -> int:
        return self.cgst_paise + self.sgst_paise + self.igst_paise

    @property
    def line_total_paise(self) -> int:
        return self.taxable_paise + self.tax_paise


@dataclass(frozen=True)
class TaxBucket:
    """Aggregate for all lines sharing one GST rate."""
    gst_rate_bps: int
    taxable_sum_paise: int
    cgst_paise: int
    sgst_paise: int
    igst_paise: int

    @property
    def gst_rate_percent(self) -> Decimal:
        return bps_to_rate(self.gst_rate_bps)

    @property
    def tax_paise(self) -> int:
        return self.cgst_paise + self.sgst_paise + self.igst_paise


@dataclass(frozen=True)
class TaxComputation:
    """Engine output: buckets sorted by rate, line allocations in cart order."""
    is_inter_state: bool
    buckets: Tuple[TaxBucket, ...]
    lines: Tuple[LineAllocation, ...]

    @property
    def subtotal_paise(self) -> int:
        return sum(b.taxable_sum_paise for b in self.buckets)

    @property
    def cgst_paise(self) -> int:
        return sum(b.cgst_paise for b in self.buckets)

    @property
    def sgst_paise(self) -> int:
        return sum(b.sgst_paise for b in self.buckets)

    @property
    def igst_paise(self) -> int:
        return sum(b.igst_paise for b in self.buckets)

    @property
    def tax_total_paise(self) -> int:
        return self.cgst_paise + self.sgst_paise + self.igst_paise

    @property
    def grand_total_paise(self) -> int:
        return self.subtotal_paise + self.tax_total_paise

    def bucket_for(self, gst_rate_bps: int) -> Optional[TaxBucket]:
        for bucket in self.buckets:
            if bucket.gst_rate_bps == gst_rate_bps:
                return bucket
        return None


def validate_line(line: CartLine, index: int) -> None:
    """Reject cart lines the engine cannot price."""
    if line.quantity < 1:
        raise invalid_input(f"Line {index + 1}: quantity must be at least 1", line=index)
    if line.unit_price_paise < 0:
        raise invalid_input(f"Line {index + 1}: unit price cannot be negative", line=index)
    if not line.hsn_code or not line.hsn_code.strip():
        raise invalid_input(f"Line {index + 1}: HSN code is required", line=index)
    if line.discount_paise < 0:
        raise invalid_input(f"Line {index + 1}: discount cannot be negative", line=index)
    if line.discount_percent is not None:
        if line.discount_paise:
            raise invalid_input(
                f"Line {index + 1}: give either a discount amount or a discount percent, not both",
                line=index,
            )
        if not (Decimal("0") <= line.discount_percent <= Decimal("100")):
            raise invalid_input(f"Line {index + 1}: discount percent must be 0-100", line=index)
    try:
        bps = line.gst_rate_bps
    except ValueError as e:
        raise invalid_input(f"Line {index + 1}: {e}", line=index)
    if not (0 <= bps <= MAX_GST_RATE_BPS):
        raise invalid_input(f"Line {index + 1}: GST rate must be between 0 and 100", line=index)


def _price_line(line: CartLine) -> Tuple[int, int, int]:
    """Return (discount, taxable, tax) for one line before the GST split."""
    list_amount = line.list_amount_paise
    discount = min(line.resolved_discount_paise(), list_amount)
    gross = list_amount - discount

    if line.tax_inclusion == TaxInclusion.INCLUSIVE:
        taxable, tax = extract_inclusive_tax(gross, line.gst_rate_percent)
    else:
        taxable = gross
        tax = apply_rate(taxable, line.gst_rate_percent)
    return discount, taxable, tax


def compute_tax(
    lines: Sequence[CartLine],
    seller_state_code: str,
    buyer_state_code: str,
) -> TaxComputation:
    """
    Compute per-rate buckets and per-line allocations for a cart.

    Raises:
        BillingError(INVALID_INPUT): empty cart, blank state codes, or a bad line
    """
    if not lines:
        raise invalid_input("Cart is empty")
    if not seller_state_code or not seller_state_code.strip():
        raise invalid_input("Seller state code is required")
    if not buyer_state_code or not buyer_state_code.strip():
        raise invalid_input("Buyer state code (place of supply) is required")

    for index, line in enumerate(lines):
        validate_line(line, index)

    is_inter_state = seller_state_code != buyer_state_code

    priced: List[Tuple[int, int, int]] = [_price_line(line) for line in lines]

    positions_by_rate: Dict[int, List[int]] = OrderedDict()
    for index, line in enumerate(lines):
        positions_by_rate.setdefault(line.gst_rate_bps, []).append(index)

    allocations: List[Optional[LineAllocation]] = [None] * len(lines)
    buckets: List[TaxBucket] = []

    for bps in sorted(positions_by_rate):
        positions = positions_by_rate[bps]
        line_taxes = [priced[i][2] for i in positions]
        bucket_tax = sum(line_taxes)

        if is_inter_state:
            cgst_shares = [0] * len(positions)
            sgst_shares = [0] * len(positions)
            igst_shares = list(line_taxes)
        else:
            bucket_cgst, _ = split_half(bucket_tax)
            cgst_shares = allocate(bucket_cgst, line_taxes)
            sgst_shares = [tax - cgst for tax, cgst in zip(line_taxes, cgst_shares)]
            igst_shares = [0] * len(positions)

        for slot, i in enumerate(positions):
            discount, taxable, _ = priced[i]
            allocations[i] = LineAllocation(
                position=i,
                gst_rate_bps=bps,
                discount_paise=discount,
                taxable_paise=taxable,
                cgst_paise=cgst_shares[slot],
                sgst_paise=sgst_shares[slot],
                igst_paise=igst_shares[slot],
            )

        buckets.append(TaxBucket(
            gst_rate_bps=bps,
            taxable_sum_paise=sum(priced[i][1] for i in positions),
            cgst_paise=sum(cgst_shares),
            sgst_paise=sum(sgst_shares),
            igst_paise=sum(igst_shares),
        ))

    computation = TaxComputation(
        is_inter_state=is_inter_state,
        buckets=tuple(buckets),
        lines=tuple(allocations),
    )
    logger.debug(
        f"Computed tax for {len(lines)} lines: taxable={computation.subtotal_paise} "
        f"tax={computation.tax_total_paise} inter_state={is_inter_state}"
    )
    return computation


def reverse(computation: TaxComputation) -> TaxComputation:
    """Sign-reversed copy of a computation, used for credit notes."""
    return TaxComputation(
        is_inter_state=computation.is_inter_state,
        buckets=tuple(
            TaxBucket(
                gst_rate_bps=b.gst_rate_bps,
                taxable_sum_paise=-b.taxable_sum_paise,
                cgst_paise=-b.cgst_paise,
                sgst_paise=-b.sgst_paise,
                igst_paise=-b.igst_paise,
            )
            for b in computation.buckets
        ),
        lines=tuple(
            LineAllocation(
                position=a.position,
                gst_rate_bps=a.gst_rate_bps,
                discount_paise=-a.discount_paise,
                taxable_paise=-a.taxable_paise,
                cgst_paise=-a.cgst_paise,
                sgst_paise=-a.sgst_paise,
                igst_paise=-a.igst_paise,
            )
            for a in computation.lines
        ),
    )


@dataclass(frozen=True)
class LineCharge:
    """Amounts on a sold line, or the part of them already credited back."""
    quantity: int
    discount_paise: int = 0
    taxable_paise: int = 0
    cgst_paise: int = 0
    sgst_paise: int = 0
    igst_paise: int = 0


@dataclass(frozen=True)
class LineReturn:
    """Units of one sold line coming back on a credit note."""
    gst_rate_bps: int
    sold: LineCharge
    credited: LineCharge
    quantity: int


CHARGE_FIELDS = ("discount_paise", "taxable_paise", "cgst_paise", "sgst_paise", "igst_paise")


def reverse_returns(returns: Sequence[LineReturn], is_inter_state: bool) -> TaxComputation:
    """
    Sign-reversed computation for returned units, taken from what the sale
    actually charged rather than re-priced.

    Each amount is credited as its share for everything returned so far,
    including this return, minus what earlier credit notes already took.
    Returning the last unit therefore takes the exact remainder, and a
    line returned in full reverses its stored CGST/SGST split unchanged.
    """
    if not returns:
        raise invalid_input("Nothing to return")

    allocations: List[LineAllocation] = []
    for index, item in enumerate(returns):
        returned_after = item.credited.quantity + item.quantity
        if item.quantity < 1 or returned_after > item.sold.quantity:
            raise invalid_input(
                f"Line {index + 1}: cannot return {item.quantity} of "
                f"{item.sold.quantity - item.credited.quantity} remaining",
                line=index,
            )
        shares = {
            field: prorate(getattr(item.sold, field), returned_after, item.sold.quantity)
            - getattr(item.credited, field)
            for field in CHARGE_FIELDS
        }
        allocations.append(LineAllocation(position=index, gst_rate_bps=item.gst_rate_bps, **shares))

    buckets = []
    for bps in sorted({a.gst_rate_bps for a in allocations}):
        members = [a for a in allocations if a.gst_rate_bps == bps]
        buckets.append(TaxBucket(
            gst_rate_bps=bps,
            taxable_sum_paise=sum(a.taxable_paise for a in members),
            cgst_paise=sum(a.cgst_paise for a in members),
            sgst_paise=sum(a.sgst_paise for a in members),
            igst_paise=sum(a.igst_paise for a in members),
        ))

    return reverse(TaxComputation(
        is_inter_state=is_inter_state,
        buckets=tuple(buckets),
        lines=tuple(allocations),
    ))


def distribute_bill_discount(
    lines: Sequence[CartLine],
    bill_discount_paise: int = 0,
    bill_discount_percent: Optional[Decimal] = None,
) -> List[CartLine]:
    """
    Spread a bill-level discount over the lines, weighted by each line's
    amount after its own discount. Returned lines carry the combined
    discount in paise so the engine prices them like any other line.
    """
    if bill_discount_percent is not None and bill_discount_paise:
        raise invalid_input("Give either a bill discount amount or a bill discount percent, not both")
    if bill_discount_paise < 0:
        raise invalid_input("Bill discount cannot be negative")
    if bill_discount_percent is not None and not (Decimal("0") <= bill_discount_percent <= Decimal("100")):
        raise invalid_input("Bill discount percent must be 0-100")

    for index, line in enumerate(lines):
        validate_line(line, index)

    if not bill_discount_paise and not bill_discount_percent:
        return list(lines)

    line_discounts = [min(line.resolved_discount_paise(), line.list_amount_paise) for line in lines]
    weights = [line.list_amount_paise - d for line, d in zip(lines, line_discounts)]
    net_total = sum(weights)

    if bill_discount_percent is not None:
        bill_discount_paise = apply_rate(net_total, bill_discount_percent)
    if bill_discount_paise > net_total:
        raise invalid_input(
            f"Bill discount {bill_discount_paise} exceeds cart value {net_total}",
            bill_discount_paise=bill_discount_paise,
            cart_value_paise=net_total,
        )

    shares = allocate(bill_discount_paise, weights)
    return [
        replace(line, discount_paise=line_discount + share, discount_percent=None)
        for line, line_discount, share in zip(lines, line_discounts, shares)
    ]


def prorate(amount_paise: int, part: int, whole: int) -> int:
    """amount * part / whole, half-up. Used to split line amounts on returns."""
    if whole <= 0:
        raise ValueError("whole must be positive")
    value = Decimal(amount_paise) * Decimal(part) / Decimal(whole)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

# Overview: Pure integer-cents price arithmetic for carts and persisted sales.

"""
Pricing invariants (authoritative)

- All money is integer cents. No floats anywhere in a money path.
- line_total = (base_price + variant_modifier) * quantity
- subtotal = sum(line_total)
- 0 <= discount <= subtotal
- tax = round_half_up((subtotal - discount) * tax_rate_bps / 10000)
  Tax is charged on the post-discount, pre-redemption amount.
- redemption = floor(points * 100 / points_per_currency_unit), capped at
  subtotal - discount + tax
- final = max(0, subtotal - discount + tax - redemption)

Nothing here touches the database; every function may be called
speculatively (quotes) and repeatedly with the same result.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from ..errors import ValidationError

BPS_DENOMINATOR = 10000


@dataclass(frozen=True)
class PriceLine:
    unit_base_price_cents: int
    variant_modifier_cents: int
    quantity: int

    @property
    def unit_price_cents(self) -> int:
        return self.unit_base_price_cents + self.variant_modifier_cents


@dataclass(frozen=True)
class RedemptionRequest:
    points_to_redeem: int
    points_per_currency_unit: int
    available_points: int


@dataclass(frozen=True)
class PriceBreakdown:
    subtotal_cents: int
    discount_cents: int
    tax_rate_bps: int
    tax_cents: int
    redemption_cents: int
    points_used: int
    final_amount_cents: int
    line_totals_cents: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "tax_cents": self.tax_cents,
            "redemption_cents": self.redemption_cents,
            "points_used": self.points_used,
            "final_amount_cents": self.final_amount_cents,
            "line_totals_cents": list(self.line_totals_cents),
        }


def round_half_up_div(numerator: int, denominator: int) -> int:
    """Integer division rounded to nearest, halves away from zero (non-negative inputs)."""
    return (numerator + (denominator // 2)) // denominator


def tax_rate_to_bps(rate) -> int:
    """
    Convert a fractional tax rate ("0.08", Decimal("0.16"), 0.075) to basis points.

    Goes through Decimal(str(...)) so binary float noise never reaches the
    money path.
    """
    try:
        value = Decimal(str(rate))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError("Invalid tax rate", details={"tax_rate": str(rate)}) from exc
    if value < 0 or value >= 1:
        raise ValidationError("Tax rate must be in [0, 1)", details={"tax_rate": str(rate)})
    return int((value * BPS_DENOMINATOR).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_line_total(line: PriceLine) -> int:
    if not isinstance(line.quantity, int) or line.quantity <= 0:
        raise ValidationError("Quantity must be a positive integer", details={"quantity": line.quantity})
    if line.unit_base_price_cents < 0 or line.variant_modifier_cents < 0:
        raise ValidationError(
            "Price components cannot be negative",
            details={
                "unit_base_price_cents": line.unit_base_price_cents,
                "variant_modifier_cents": line.variant_modifier_cents,
            },
        )
    return line.unit_price_cents * line.quantity


def compute_tax(taxable_cents: int, tax_rate_bps: int) -> int:
    if tax_rate_bps < 0:
        raise ValidationError("Tax rate cannot be negative", details={"tax_rate_bps": tax_rate_bps})
    return round_half_up_div(taxable_cents * tax_rate_bps, BPS_DENOMINATOR)


def compute_redemption(redemption: RedemptionRequest | None, cap_cents: int) -> tuple[int, int]:
    """
    Return (redemption_cents, points_used).

    Points beyond available_points are ignored here; whether asking for more
    than the balance is an error is loyalty policy, decided before pricing.
    points_used is the smallest number of points worth redemption_cents.
    """
    if redemption is None or redemption.points_to_redeem == 0:
        return 0, 0
    if redemption.points_to_redeem < 0:
        raise ValidationError(
            "points_to_redeem cannot be negative",
            details={"points_to_redeem": redemption.points_to_redeem},
        )
    if redemption.points_per_currency_unit <= 0:
        raise ValidationError(
            "points_per_currency_unit must be positive",
            details={"points_per_currency_unit": redemption.points_per_currency_unit},
        )

    ppu = redemption.points_per_currency_unit
    points = min(redemption.points_to_redeem, max(0, redemption.available_points))
    value_cents = (points * 100) // ppu
    redemption_cents = min(value_cents, max(0, cap_cents))
    points_used = -(-(redemption_cents * ppu) // 100)
    return redemption_cents, points_used


def calculate_totals(
    lines: list[PriceLine],
    tax_rate_bps: int,
    *,
    discount_cents: int = 0,
    redemption: RedemptionRequest | None = None,
) -> PriceBreakdown:
    if not lines:
        raise ValidationError("Cart cannot be empty")

    line_totals = [compute_line_total(line) for line in lines]
    subtotal = sum(line_totals)

    discount = discount_cents or 0
    if discount < 0 or discount > subtotal:
        raise ValidationError(
            "Discount must be between 0 and the subtotal",
            details={"discount_cents": discount, "subtotal_cents": subtotal},
        )

    tax = compute_tax(subtotal - discount, tax_rate_bps)
    redemption_cents, points_used = compute_redemption(redemption, subtotal - discount + tax)
    final = max(0, subtotal - discount + tax - redemption_cents)

    return PriceBreakdown(
        subtotal_cents=subtotal,
        discount_cents=discount,
        tax_rate_bps=tax_rate_bps,
        tax_cents=tax,
        redemption_cents=redemption_cents,
        points_used=points_used,
        final_amount_cents=final,
        line_totals_cents=line_totals,
    )


def recompute_sale_totals(sale) -> PriceBreakdown:
    """
    Re-derive a persisted sale's totals from its items.

    The stored redemption_cents is taken as given; the points it was bought
    with are already settled.
    """
    line_totals = []
    for item in sale.items:
        line_totals.append(
            compute_line_total(PriceLine(item.unit_price_cents, 0, item.quantity))
        )
    subtotal = sum(line_totals)
    tax = compute_tax(subtotal - sale.discount_cents, sale.tax_rate_bps)
    redemption_cents = min(sale.redemption_cents, subtotal - sale.discount_cents + tax)
    return PriceBreakdown(
        subtotal_cents=subtotal,
        discount_cents=sale.discount_cents,
        tax_rate_bps=sale.tax_rate_bps,
        tax_cents=tax,
        redemption_cents=redemption_cents,
        points_used=sale.points_redeemed,
        final_amount_cents=max(0, subtotal - sale.discount_cents + tax - redemption_cents),
        line_totals_cents=line_totals,
    )

"""Platform fee calculation.

Fee structure:

1. **Platform fee** - a percentage of the escrowed amount, charged to the
   worker's side at release time. ``fee = round(escrow * percent / 100)``.
2. **Net payout** - ``escrow - fee``. This is what lands in the worker's
   clearing-window balance.

Everything is computed in integer cents. The fee is rounded once and the net
is derived by subtraction, so ``fee + net == escrow`` holds exactly for every
input. Withdrawal satisfiability checks only ever compare cents.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from app.config import settings


def to_cents(amount: Decimal | int | float | str) -> int:
    """Convert a dollar amount to integer cents, rounding half up."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(Decimal("0.01"))


@dataclass(frozen=True)
class FeeBreakdown:
    """Itemized split of an escrowed amount at release."""
    escrow_cents: int
    platform_fee_cents: int
    net_cents: int
    fee_percent: Decimal

    @property
    def escrow_amount(self) -> Decimal:
        return from_cents(self.escrow_cents)

    @property
    def platform_fee(self) -> Decimal:
        return from_cents(self.platform_fee_cents)

    @property
    def net_amount(self) -> Decimal:
        return from_cents(self.net_cents)

    def to_dict(self) -> dict:
        return {
            "escrow_amount": str(self.escrow_amount),
            "platform_fee": str(self.platform_fee),
            "net_amount": str(self.net_amount),
            "fee_percent": str(self.fee_percent),
        }


def calculate_platform_fee(
    escrow_amount: Decimal | int | float | str,
    fee_percent: Decimal | None = None,
) -> FeeBreakdown:
    """Split an escrow amount into platform fee and worker net, in cents."""
    percent = settings.platform_fee_percent if fee_percent is None else Decimal(str(fee_percent))
    if percent < 0 or percent > 100:
        raise ValueError(f"Fee percent must be between 0 and 100, got {percent}")

    escrow_cents = to_cents(escrow_amount)
    if escrow_cents < 0:
        raise ValueError("Escrow amount cannot be negative")

    fee_cents = int(
        (Decimal(escrow_cents) * percent / 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    )
    return FeeBreakdown(
        escrow_cents=escrow_cents,
        platform_fee_cents=fee_cents,
        net_cents=escrow_cents - fee_cents,
        fee_percent=percent,
    )


def get_fee_schedule() -> dict:
    """Return the current fee schedule for display to posters and workers."""
    example = calculate_platform_fee(Decimal("100.00"))
    return {
        "platform_fee_percent": str(settings.platform_fee_percent),
        "charged_at": "Payment release (task approval)",
        "clearing_window_hours": settings.clearing_window_hours,
        "example": f"On a ${example.escrow_amount} task the worker receives ${example.net_amount} "
                   f"after a ${example.platform_fee} platform fee, withdrawable "
                   f"{settings.clearing_window_hours}h after approval.",
    }

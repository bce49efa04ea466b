"""
Credit ledger accounting.

Pure operations over CreditsState values. Persistence and concurrency
control live in launch_pilot.storage.repository.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Union

from .tiers import Tier, get_token_limit, resolve_tier
from launch_pilot.storage.models import CreditsState, PaymentStatus, current_period


@dataclass(frozen=True)
class CreditPackage:
    """Purchasable block of extra credits."""
    credits: int
    price: Decimal


CREDIT_PACKAGES: List[CreditPackage] = [
    CreditPackage(credits=1000, price=Decimal("5")),
    CreditPackage(credits=5000, price=Decimal("20")),
    CreditPackage(credits=20000, price=Decimal("60")),
]


def max_tokens(entry: CreditsState) -> int:
    """Tier allowance for the current period."""
    return get_token_limit(entry.tier)


def allowance(entry: CreditsState) -> int:
    """Tier allowance plus purchased credits."""
    return max_tokens(entry) + entry.purchased_credits


def remaining(entry: CreditsState) -> int:
    """Remaining balance, floored at zero."""
    return max(0, allowance(entry) - entry.used_this_month)


def usage_percentage(entry: CreditsState) -> float:
    """Share of the tier allowance used, capped at 100."""
    return min(100.0, entry.used_this_month / max_tokens(entry) * 100)


def debit(
    entry: CreditsState,
    cost: int,
    input_tokens: int = 0,
    output_tokens: int = 0
) -> CreditsState:
    """Add a cost to the period's usage.

    The counter is allowed to exceed the allowance; remaining() floors at 0.

    Args:
        entry: Current ledger entry
        cost: Credits to consume (>= 0)
        input_tokens: Prompt tokens accounted in cost
        output_tokens: Completion tokens accounted in cost

    Returns:
        Updated ledger entry

    Raises:
        ValueError: If cost or token counts are negative
    """
    if cost < 0 or input_tokens < 0 or output_tokens < 0:
        raise ValueError("debit amounts must be >= 0")
    return entry.evolve(
        used_this_month=entry.used_this_month + cost,
        input_tokens_used=entry.input_tokens_used + input_tokens,
        output_tokens_used=entry.output_tokens_used + output_tokens,
    )


def top_up(entry: CreditsState, amount: int) -> CreditsState:
    """Add purchased credits to the current period's allowance."""
    if amount <= 0:
        raise ValueError("top-up amount must be > 0")
    return entry.evolve(purchased_credits=entry.purchased_credits + amount)


def purchase_package(entry: CreditsState, index: int) -> CreditsState:
    """Top up with one of the CREDIT_PACKAGES.

    Raises:
        IndexError: If the package does not exist
    """
    if index < 0 or index >= len(CREDIT_PACKAGES):
        raise IndexError(f"Unknown credit package: {index}")
    return top_up(entry, CREDIT_PACKAGES[index].credits)


def change_tier(
    entry: CreditsState,
    tier: Union[Tier, str],
    is_payment: bool = False,
    now: Optional[datetime] = None
) -> CreditsState:
    """Switch tier and start a fresh period.

    Upgrading from free stamps the subscription start and payment dates.
    A payment on a paid tier refreshes the payment date. Downgrading to
    free clears subscription data.
    """
    now = now or datetime.now()
    stamp = now.isoformat()
    new_tier = resolve_tier(tier)

    subscription_start = entry.subscription_start_date
    last_payment = entry.last_payment_date
    if new_tier != Tier.FREE and entry.tier == Tier.FREE:
        subscription_start = stamp
        last_payment = stamp
    if is_payment and new_tier != Tier.FREE:
        last_payment = stamp
    if new_tier == Tier.FREE and entry.tier != Tier.FREE:
        subscription_start = None
        last_payment = None

    return CreditsState(
        tier=new_tier,
        last_reset=current_period(now),
        subscription_start_date=subscription_start,
        last_payment_date=last_payment,
        payment_status=PaymentStatus.ACTIVE,
    )


def needs_reset(entry: CreditsState, now: Optional[datetime] = None) -> bool:
    return entry.last_reset != current_period(now)


def apply_monthly_reset(entry: CreditsState, now: Optional[datetime] = None) -> CreditsState:
    """Zero usage when the stored period is not the current month.

    The tier is kept as is; payment validation is not done client-side.
    """
    if not needs_reset(entry, now):
        return entry
    return entry.evolve(
        used_this_month=0,
        input_tokens_used=0,
        output_tokens_used=0,
        purchased_credits=0,
        last_reset=current_period(now),
    )

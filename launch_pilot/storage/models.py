"""
Data models for storage layer.

Defines the persisted ledger entry and usage audit records.
"""

from dataclasses import asdict, dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from launch_pilot.core.tiers import Tier, resolve_tier


class PaymentStatus(Enum):
    ACTIVE = "active"
    FAILED = "failed"
    CANCELLED = "cancelled"


class UsageKind(Enum):
    DEBIT = "debit"
    TOP_UP = "top_up"
    TIER_CHANGE = "tier_change"
    RESET = "reset"


def current_period(now: Optional[datetime] = None) -> str:
    """Billing period marker (YYYY-MM) for a point in time."""
    return (now or datetime.now()).strftime("%Y-%m")


@dataclass(frozen=True)
class CreditsState:
    """Per-user credit ledger entry.

    Persisted as a single JSON record under the user's storage key.
    Ledger operations in launch_pilot.core.ledger return new instances.
    """
    tier: Tier = Tier.FREE
    used_this_month: int = 0
    input_tokens_used: int = 0
    output_tokens_used: int = 0
    purchased_credits: int = 0
    last_reset: str = ""
    subscription_start_date: Optional[str] = None
    last_payment_date: Optional[str] = None
    payment_status: PaymentStatus = PaymentStatus.ACTIVE

    @classmethod
    def fresh(cls, now: Optional[datetime] = None) -> "CreditsState":
        """Default entry: free tier, nothing used, current period."""
        return cls(last_reset=current_period(now))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["tier"] = self.tier.value
        data["payment_status"] = self.payment_status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CreditsState":
        """Build an entry from a stored record.

        Missing counters default to zero. Raises ValueError or TypeError
        on malformed values.
        """
        if not isinstance(data, dict):
            raise TypeError("Ledger record must be an object")
        used = int(data.get("used_this_month") or 0)
        if used < 0:
            raise ValueError("used_this_month must be >= 0")
        return cls(
            tier=resolve_tier(data.get("tier") or Tier.FREE.value),
            used_this_month=used,
            input_tokens_used=int(data.get("input_tokens_used") or 0),
            output_tokens_used=int(data.get("output_tokens_used") or 0),
            purchased_credits=int(data.get("purchased_credits") or 0),
            last_reset=str(data.get("last_reset") or ""),
            subscription_start_date=data.get("subscription_start_date"),
            last_payment_date=data.get("last_payment_date"),
            payment_status=PaymentStatus(data.get("payment_status") or "active"),
        )

    def evolve(self, **changes: Any) -> "CreditsState":
        return replace(self, **changes)


@dataclass(frozen=True)
class UsageEvent:
    """Append-only record of a ledger mutation.

    Once written, these records are never modified.
    """
    timestamp: datetime
    user_key: str
    kind: UsageKind
    amount: int
    feature: Optional[str] = None
    model: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    used_after: int = 0

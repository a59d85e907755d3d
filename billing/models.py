# billing/models.py
"""
Billing data models.

- CustomerLink: internal user <-> provider customer (immutable)
- SubscriptionInterval: append-only history of subscription segments
- SubscriptionSnapshot: materialized current state, read for entitlement
- LedgerEntry: idempotency witness for processed provider events
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

# Statuses that grant access to paid features
ENTITLED_STATUSES = frozenset({"active", "trialing"})

# Snapshot status written when the provider reports no subscription
INACTIVE_STATUS = "inactive"


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class CustomerLink:
    """
    Mapping from an internal user to the provider's customer.

    Attributes:
        internal_user_id: Application user ID
        external_customer_id: Provider customer ID (e.g. cus_...)
        created_at: When the link was first persisted
    """
    internal_user_id: str
    external_customer_id: str
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "internal_user_id": self.internal_user_id,
            "external_customer_id": self.external_customer_id,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class SubscriptionInterval:
    """
    One continuous segment of a customer's subscription lifetime.

    At most one interval per customer is open (ended_at is None).
    Only ended_at is ever written after insert.
    """
    id: str
    external_customer_id: str
    external_subscription_id: Optional[str]
    external_price_id: Optional[str]
    tier_key: Optional[str]
    status: Optional[str]
    period_start: Optional[datetime]
    period_end: Optional[datetime]
    cancel_at_period_end: Optional[bool]
    started_at: Optional[datetime]
    ended_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)

    @classmethod
    def open(
        cls,
        external_customer_id: str,
        external_subscription_id: Optional[str],
        external_price_id: Optional[str],
        tier_key: Optional[str],
        status: Optional[str],
        period_start: Optional[datetime],
        period_end: Optional[datetime],
        cancel_at_period_end: Optional[bool],
        started_at: Optional[datetime],
        created_at: Optional[datetime] = None,
    ) -> SubscriptionInterval:
        """Create a new open interval with a generated ID."""
        return cls(
            id=str(uuid.uuid4()),
            external_customer_id=external_customer_id,
            external_subscription_id=external_subscription_id,
            external_price_id=external_price_id,
            tier_key=tier_key,
            status=status,
            period_start=period_start,
            period_end=period_end,
            cancel_at_period_end=cancel_at_period_end,
            started_at=started_at,
            ended_at=None,
            created_at=created_at or utc_now(),
        )

    @property
    def is_active(self) -> bool:
        return self.ended_at is None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "external_customer_id": self.external_customer_id,
            "external_subscription_id": self.external_subscription_id,
            "external_price_id": self.external_price_id,
            "tier_key": self.tier_key,
            "status": self.status,
            "period_start": _iso(self.period_start),
            "period_end": _iso(self.period_end),
            "cancel_at_period_end": self.cancel_at_period_end,
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class SubscriptionSnapshot:
    """
    Current subscription truth for one customer.

    Overwritten on every reconciliation pass. This is the only record
    read when checking entitlement.
    """
    external_customer_id: str
    external_subscription_id: Optional[str]
    status: Optional[str]
    tier_key: Optional[str]
    external_price_id: Optional[str]
    period_start: Optional[datetime]
    period_end: Optional[datetime]
    cancel_at_period_end: Optional[bool]
    payment_method_brand: Optional[str]
    payment_method_last4: Optional[str]
    updated_at: datetime = field(default_factory=utc_now)

    @classmethod
    def inactive(cls, external_customer_id: str, updated_at: Optional[datetime] = None) -> SubscriptionSnapshot:
        """Snapshot for a customer with no subscription at the provider."""
        return cls(
            external_customer_id=external_customer_id,
            external_subscription_id=None,
            status=INACTIVE_STATUS,
            tier_key=None,
            external_price_id=None,
            period_start=None,
            period_end=None,
            cancel_at_period_end=None,
            payment_method_brand=None,
            payment_method_last4=None,
            updated_at=updated_at or utc_now(),
        )

    @property
    def is_entitled(self) -> bool:
        return self.status in ENTITLED_STATUSES

    def to_dict(self) -> dict:
        return {
            "external_customer_id": self.external_customer_id,
            "external_subscription_id": self.external_subscription_id,
            "status": self.status,
            "tier_key": self.tier_key,
            "external_price_id": self.external_price_id,
            "period_start": _iso(self.period_start),
            "period_end": _iso(self.period_end),
            "cancel_at_period_end": self.cancel_at_period_end,
            "payment_method_brand": self.payment_method_brand,
            "payment_method_last4": self.payment_method_last4,
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class LedgerEntry:
    """
    Record of a processed provider event.

    Unique on provider_event_id. Never updated or deleted.
    """
    id: str
    provider_event_id: str
    event_type: str
    external_customer_id: Optional[str]
    raw_payload: dict[str, Any]
    created_at: datetime = field(default_factory=utc_now)

    @classmethod
    def new(
        cls,
        provider_event_id: str,
        event_type: str,
        external_customer_id: Optional[str],
        raw_payload: dict[str, Any],
    ) -> LedgerEntry:
        """Create a new ledger entry with generated ID."""
        return cls(
            id=str(uuid.uuid4()),
            provider_event_id=provider_event_id,
            event_type=event_type,
            external_customer_id=external_customer_id,
            raw_payload=raw_payload,
            created_at=utc_now(),
        )


@dataclass(frozen=True)
class Entitlement:
    """Answer to "is this user entitled, and to which tier?"."""
    active: bool
    tier_key: Optional[str] = None

    @classmethod
    def from_snapshot(cls, snapshot: Optional[SubscriptionSnapshot]) -> Entitlement:
        if snapshot is None:
            return cls(active=False, tier_key=None)
        return cls(active=snapshot.is_entitled, tier_key=snapshot.tier_key)

    def to_dict(self) -> dict:
        return {"active": self.active, "tier_key": self.tier_key}

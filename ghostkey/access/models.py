"""
Ledger-side records the core consumes: listings, access credentials, the
calls that create them, and authorization decisions.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ghostkey.base.config import SealPolicy

MS_PER_HOUR = 60 * 60 * 1000


def now_ms() -> int:
    return int(time.time() * 1000)


def rental_price(base_price: int, price_slope: int, active_rentals: int, duration_hours: int) -> int:
    """(base_price + price_slope * active_rentals) * duration_hours"""
    return (base_price + price_slope * active_rentals) * duration_hours


@dataclass(frozen=True)
class Listing:
    listing_id: str
    seller: str
    blob_id: str
    content_id: str
    mime_type: str
    title: str
    description: str
    base_price: int
    price_slope: int
    active_rentals: int = 0
    total_revenue: int = 0
    is_active: bool = True
    created_at_ms: int = field(default_factory=now_ms)

    def price_for(self, duration_hours: int) -> int:
        return rental_price(self.base_price, self.price_slope, self.active_rentals, duration_hours)


@dataclass(frozen=True)
class AccessCredential:
    """An access pass: time-boxed right to decrypt one listing's content."""
    credential_id: str
    listing_id: str
    owner_address: str
    expires_at_ms: int
    purchase_price: int

    def is_expired(self, at_ms: Optional[int] = None) -> bool:
        return self.expires_at_ms <= (now_ms() if at_ms is None else at_ms)


def partition_credentials(
    credentials: Iterable[AccessCredential],
    at_ms: Optional[int] = None,
) -> Tuple[List[AccessCredential], List[AccessCredential]]:
    """Split into (active, expired) at the given instant."""
    at_ms = now_ms() if at_ms is None else at_ms
    active: List[AccessCredential] = []
    expired: List[AccessCredential] = []
    for credential in credentials:
        (expired if credential.is_expired(at_ms) else active).append(credential)
    return active, expired


# ============================================================================
# Ledger calls
# ============================================================================
# Only the shape of what the core asks the ledger to do. Building and
# submitting the actual transaction is the wallet layer's job.

@dataclass(frozen=True)
class CreateListingCall:
    FUNCTION = "create_listing"

    blob_id: str
    content_id: str
    mime_type: str
    title: str
    description: str
    base_price: int
    price_slope: int

    def target(self, policy: SealPolicy) -> str:
        return f"{policy.package_id}::{policy.module_name}::{self.FUNCTION}"

    def arguments(self) -> List[Any]:
        return [
            self.blob_id,
            self.content_id,
            self.mime_type,
            self.title,
            self.description,
            self.base_price,
            self.price_slope,
        ]


@dataclass(frozen=True)
class RentAccessCall:
    FUNCTION = "rent_access_with_max_price"

    listing_id: str
    duration_hours: int
    payment_amount: int
    max_price: int

    def target(self, policy: SealPolicy) -> str:
        return f"{policy.package_id}::{policy.module_name}::{self.FUNCTION}"

    def arguments(self) -> List[Any]:
        return [self.listing_id, self.payment_amount, self.duration_hours, self.max_price]


# ============================================================================
# Authorization
# ============================================================================

class DenialReason(str, Enum):
    UNKNOWN_CREDENTIAL = "unknown_credential"
    UNKNOWN_LISTING = "unknown_listing"
    EXPIRED = "expired"
    CONTENT_MISMATCH = "content_mismatch"
    INVALID_CONTENT_ID = "invalid_content_id"


@dataclass(frozen=True)
class AuthorizationDecision:
    approved: bool
    credential_id: str
    content_id: str
    denial: Optional[DenialReason] = None
    checked_at_ms: int = field(default_factory=now_ms)

    @property
    def reason(self) -> str:
        return "approved" if self.approved else (self.denial.value if self.denial else "denied")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approved": self.approved,
            "credential_id": self.credential_id,
            "content_id": self.content_id,
            "reason": self.reason,
            "checked_at_ms": self.checked_at_ms,
        }

    @classmethod
    def allow(cls, credential_id: str, content_id: str, at_ms: int) -> "AuthorizationDecision":
        return cls(True, credential_id, content_id, None, at_ms)

    @classmethod
    def deny(
        cls, credential_id: str, content_id: str, reason: DenialReason, at_ms: int
    ) -> "AuthorizationDecision":
        return cls(False, credential_id, content_id, reason, at_ms)

"""Module ledger: the ledger collaborator and the authorization oracle built on it."""
#
# PURPOSE:
# Access passes live on an external ledger. The core talks to it through the
# LedgerClient protocol and asks one question of it, through the
# AuthorizationOracle: "does this credential currently unlock this content id?"
#
# KEY CONCEPTS:
# - InMemoryLedger: reference ledger (listings, rentals with bonding-curve
#   pricing and max-price protection), used by tests and offline tooling
# - LedgerAuthorizationOracle: evaluates expiry + listing binding against any
#   LedgerClient, with an injectable clock
#
from __future__ import annotations

import logging
import secrets
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Protocol

from ghostkey.access.models import (
    MS_PER_HOUR,
    AccessCredential,
    AuthorizationDecision,
    CreateListingCall,
    DenialReason,
    Listing,
    RentAccessCall,
    now_ms,
    rental_price,
)
from ghostkey.errors import LedgerNotFound, LedgerRejected

logger = logging.getLogger(__name__)

Clock = Callable[[], int]


class LedgerClient(Protocol):
    async def current_epoch(self) -> int: ...

    async def create_listing(self, call: CreateListingCall, seller: str) -> Listing: ...

    async def rent_access(self, call: RentAccessCall, renter: str) -> AccessCredential: ...

    async def get_listing(self, listing_id: str) -> Optional[Listing]: ...

    async def get_credential(self, credential_id: str) -> Optional[AccessCredential]: ...

    async def credentials_for(self, owner: str) -> List[AccessCredential]: ...


class AuthorizationOracle(Protocol):
    async def authorize(self, credential_id: str, content_id: str) -> AuthorizationDecision: ...


def _object_id() -> str:
    return f"0x{secrets.token_hex(32)}"


class InMemoryLedger:
    """
    Process-local ledger.

    Rental price follows the bonding curve
    (base_price + price_slope * active_rentals) * duration_hours, where
    active_rentals counts the listing's unexpired passes at rental time.
    """

    def __init__(self, *, epoch: int = 0, clock: Clock = now_ms):
        self._epoch = epoch
        self._clock = clock
        self._listings: Dict[str, Listing] = {}
        self._credentials: Dict[str, AccessCredential] = {}

    async def current_epoch(self) -> int:
        return self._epoch

    def advance_epoch(self, by: int = 1) -> int:
        self._epoch += by
        return self._epoch

    def _active_rentals(self, listing_id: str, at_ms: int) -> int:
        return sum(
            1
            for c in self._credentials.values()
            if c.listing_id == listing_id and not c.is_expired(at_ms)
        )

    async def create_listing(self, call: CreateListingCall, seller: str) -> Listing:
        if not call.blob_id or not call.content_id:
            raise LedgerRejected("Listing needs a blob id and a content id")
        if call.base_price < 0 or call.price_slope < 0:
            raise LedgerRejected(
                "Prices must be non-negative",
                details={"base_price": call.base_price, "price_slope": call.price_slope},
            )

        listing = Listing(
            listing_id=_object_id(),
            seller=seller,
            blob_id=call.blob_id,
            content_id=call.content_id,
            mime_type=call.mime_type,
            title=call.title,
            description=call.description,
            base_price=call.base_price,
            price_slope=call.price_slope,
            created_at_ms=self._clock(),
        )
        self._listings[listing.listing_id] = listing
        logger.info(f"Listing created: {listing.listing_id} ({listing.title!r})")
        return listing

    async def rent_access(self, call: RentAccessCall, renter: str) -> AccessCredential:
        listing = self._listings.get(call.listing_id)
        if listing is None:
            raise LedgerNotFound(f"Listing {call.listing_id} not found")
        if not listing.is_active:
            raise LedgerRejected(f"Listing {call.listing_id} is not active")
        if call.duration_hours < 1:
            raise LedgerRejected("Rental duration must be at least one hour")

        at = self._clock()
        active = self._active_rentals(listing.listing_id, at)
        price = rental_price(listing.base_price, listing.price_slope, active, call.duration_hours)
        if price > call.max_price:
            raise LedgerRejected(
                "Price exceeds max_price",
                details={"price": price, "max_price": call.max_price},
            )
        if call.payment_amount < price:
            raise LedgerRejected(
                "Insufficient payment",
                details={"price": price, "payment": call.payment_amount},
            )

        credential = AccessCredential(
            credential_id=_object_id(),
            listing_id=listing.listing_id,
            owner_address=renter,
            expires_at_ms=at + call.duration_hours * MS_PER_HOUR,
            purchase_price=price,
        )
        self._credentials[credential.credential_id] = credential
        self._listings[listing.listing_id] = replace(
            listing,
            active_rentals=active + 1,
            total_revenue=listing.total_revenue + price,
        )
        logger.info(f"Access rented: {credential.credential_id} on {listing.listing_id} for {price}")
        return credential

    async def get_listing(self, listing_id: str) -> Optional[Listing]:
        return self._listings.get(listing_id)

    async def get_credential(self, credential_id: str) -> Optional[AccessCredential]:
        return self._credentials.get(credential_id)

    async def credentials_for(self, owner: str) -> List[AccessCredential]:
        return [c for c in self._credentials.values() if c.owner_address == owner]

    def deactivate(self, listing_id: str) -> None:
        listing = self._listings.get(listing_id)
        if listing is None:
            raise LedgerNotFound(f"Listing {listing_id} not found")
        self._listings[listing_id] = replace(listing, is_active=False)


class LedgerAuthorizationOracle:
    """
    Approves iff the credential exists, has not expired, and belongs to a
    listing bound to exactly this content id.
    """

    def __init__(self, ledger: LedgerClient, *, clock: Clock = now_ms):
        self.ledger = ledger
        self._clock = clock

    async def authorize(self, credential_id: str, content_id: str) -> AuthorizationDecision:
        at = self._clock()

        credential = await self.ledger.get_credential(credential_id)
        if credential is None:
            return AuthorizationDecision.deny(credential_id, content_id, DenialReason.UNKNOWN_CREDENTIAL, at)
        if credential.is_expired(at):
            logger.info(f"Credential {credential_id} expired at {credential.expires_at_ms}")
            return AuthorizationDecision.deny(credential_id, content_id, DenialReason.EXPIRED, at)

        listing = await self.ledger.get_listing(credential.listing_id)
        if listing is None:
            return AuthorizationDecision.deny(credential_id, content_id, DenialReason.UNKNOWN_LISTING, at)
        if listing.content_id != content_id:
            return AuthorizationDecision.deny(credential_id, content_id, DenialReason.CONTENT_MISMATCH, at)

        return AuthorizationDecision.allow(credential_id, content_id, at)

"""
Unit tests for the in-memory ledger, rental pricing and the authorization oracle.
"""
import pytest

from ghostkey.access.ledger import InMemoryLedger, LedgerAuthorizationOracle
from ghostkey.access.models import (
    AccessCredential,
    CreateListingCall,
    DenialReason,
    RentAccessCall,
    partition_credentials,
    rental_price,
)
from ghostkey.base.config import DEFAULT_PACKAGE_ID, SealPolicy
from ghostkey.crypto import generate_content_id
from ghostkey.errors import LedgerNotFound, LedgerRejected


def _listing_call(content_id=None, base_price=100, price_slope=10):
    return CreateListingCall(
        blob_id="blob-1",
        content_id=content_id or generate_content_id(),
        mime_type="image/png",
        title="Sunset",
        description="A photo",
        base_price=base_price,
        price_slope=price_slope,
    )


def test_rental_price_bonding_curve():
    assert rental_price(100, 10, 0, 1) == 100
    assert rental_price(100, 10, 3, 2) == 260


def test_call_targets():
    policy = SealPolicy()
    assert _listing_call().target(policy) == f"{DEFAULT_PACKAGE_ID}::marketplace::create_listing"
    rent = RentAccessCall("0x1", duration_hours=2, payment_amount=10, max_price=10)
    assert rent.target(policy).endswith("::marketplace::rent_access_with_max_price")
    assert rent.arguments() == ["0x1", 10, 2, 10]


class TestInMemoryLedger:
    @pytest.mark.anyio
    async def test_create_and_fetch_listing(self, clock):
        ledger = InMemoryLedger(clock=clock)
        listing = await ledger.create_listing(_listing_call(), seller="0xseller")
        assert listing.listing_id.startswith("0x")
        assert await ledger.get_listing(listing.listing_id) == listing
        assert listing.created_at_ms == clock.now
        assert await ledger.get_listing("0xnope") is None

    @pytest.mark.anyio
    async def test_price_rises_with_active_rentals(self, clock):
        ledger = InMemoryLedger(clock=clock)
        listing = await ledger.create_listing(_listing_call(base_price=100, price_slope=10), "0xseller")

        first = await ledger.rent_access(RentAccessCall(listing.listing_id, 2, 1_000, 1_000), "0xa")
        second = await ledger.rent_access(RentAccessCall(listing.listing_id, 2, 1_000, 1_000), "0xb")

        assert first.purchase_price == 200
        assert second.purchase_price == 220
        assert first.expires_at_ms == clock.now + 2 * 60 * 60 * 1000

        updated = await ledger.get_listing(listing.listing_id)
        assert updated.active_rentals == 2
        assert updated.total_revenue == 420

    @pytest.mark.anyio
    async def test_expired_rentals_do_not_raise_price(self, clock):
        ledger = InMemoryLedger(clock=clock)
        listing = await ledger.create_listing(_listing_call(base_price=100, price_slope=10), "0xseller")
        await ledger.rent_access(RentAccessCall(listing.listing_id, 1, 1_000, 1_000), "0xa")
        clock.advance_hours(2)
        later = await ledger.rent_access(RentAccessCall(listing.listing_id, 1, 1_000, 1_000), "0xb")
        assert later.purchase_price == 100

    @pytest.mark.anyio
    async def test_max_price_protection(self, clock):
        ledger = InMemoryLedger(clock=clock)
        listing = await ledger.create_listing(_listing_call(base_price=100), "0xseller")
        with pytest.raises(LedgerRejected):
            await ledger.rent_access(RentAccessCall(listing.listing_id, 3, 1_000, max_price=299), "0xa")

    @pytest.mark.anyio
    async def test_insufficient_payment(self, clock):
        ledger = InMemoryLedger(clock=clock)
        listing = await ledger.create_listing(_listing_call(base_price=100), "0xseller")
        with pytest.raises(LedgerRejected):
            await ledger.rent_access(RentAccessCall(listing.listing_id, 1, 99, 1_000), "0xa")

    @pytest.mark.anyio
    async def test_unknown_and_inactive_listing(self, clock):
        ledger = InMemoryLedger(clock=clock)
        with pytest.raises(LedgerNotFound):
            await ledger.rent_access(RentAccessCall("0xmissing", 1, 1_000, 1_000), "0xa")

        listing = await ledger.create_listing(_listing_call(), "0xseller")
        ledger.deactivate(listing.listing_id)
        with pytest.raises(LedgerRejected):
            await ledger.rent_access(RentAccessCall(listing.listing_id, 1, 1_000, 1_000), "0xa")

    @pytest.mark.anyio
    async def test_credentials_for_owner(self, clock):
        ledger = InMemoryLedger(clock=clock)
        listing = await ledger.create_listing(_listing_call(base_price=1, price_slope=0), "0xseller")
        mine = await ledger.rent_access(RentAccessCall(listing.listing_id, 1, 10, 10), "0xme")
        await ledger.rent_access(RentAccessCall(listing.listing_id, 1, 10, 10), "0xother")
        assert await ledger.credentials_for("0xme") == [mine]

    @pytest.mark.anyio
    async def test_epoch(self):
        ledger = InMemoryLedger(epoch=7)
        assert await ledger.current_epoch() == 7
        ledger.advance_epoch()
        assert await ledger.current_epoch() == 8


def test_partition_credentials():
    active = AccessCredential("0x1", "0xl", "0xme", expires_at_ms=2_000, purchase_price=1)
    expired = AccessCredential("0x2", "0xl", "0xme", expires_at_ms=1_000, purchase_price=1)
    assert partition_credentials([active, expired], at_ms=1_000) == ([active], [expired])


class TestAuthorizationOracle:
    @pytest.mark.anyio
    async def test_valid_credential_is_approved(self, clock):
        ledger = InMemoryLedger(clock=clock)
        content_id = generate_content_id()
        listing = await ledger.create_listing(_listing_call(content_id), "0xseller")
        credential = await ledger.rent_access(RentAccessCall(listing.listing_id, 1, 1_000, 1_000), "0xa")

        decision = await LedgerAuthorizationOracle(ledger, clock=clock).authorize(
            credential.credential_id, content_id
        )
        assert decision.approved
        assert decision.reason == "approved"

    @pytest.mark.anyio
    async def test_expired_credential_is_denied(self, clock):
        ledger = InMemoryLedger(clock=clock)
        content_id = generate_content_id()
        listing = await ledger.create_listing(_listing_call(content_id), "0xseller")
        credential = await ledger.rent_access(RentAccessCall(listing.listing_id, 1, 1_000, 1_000), "0xa")

        clock.advance_hours(1)
        decision = await LedgerAuthorizationOracle(ledger, clock=clock).authorize(
            credential.credential_id, content_id
        )
        assert not decision.approved
        assert decision.denial == DenialReason.EXPIRED

    @pytest.mark.anyio
    async def test_content_mismatch_is_denied(self, clock):
        ledger = InMemoryLedger(clock=clock)
        listing = await ledger.create_listing(_listing_call(), "0xseller")
        credential = await ledger.rent_access(RentAccessCall(listing.listing_id, 1, 1_000, 1_000), "0xa")

        decision = await LedgerAuthorizationOracle(ledger, clock=clock).authorize(
            credential.credential_id, generate_content_id()
        )
        assert decision.denial == DenialReason.CONTENT_MISMATCH

    @pytest.mark.anyio
    async def test_unknown_credential_is_denied(self, clock):
        decision = await LedgerAuthorizationOracle(InMemoryLedger(clock=clock), clock=clock).authorize(
            "0xghost", generate_content_id()
        )
        assert decision.denial == DenialReason.UNKNOWN_CREDENTIAL
        assert decision.to_dict()["reason"] == "unknown_credential"

"""
Unit tests for the request -> approve -> decrypt state machine.
"""
import httpx
import pytest

from ghostkey.access.ledger import InMemoryLedger, LedgerAuthorizationOracle
from ghostkey.access.models import AuthorizationDecision, CreateListingCall, DenialReason, RentAccessCall
from ghostkey.access.protocol import AccessRequest, AccessState
from ghostkey.base.config import SealPolicy
from ghostkey.crypto import EnvelopeCodec, generate_content_id
from ghostkey.crypto.escrow import KeyShareHolder, ThresholdKeyEscrow
from ghostkey.errors import (
    AccessDenied,
    AuthorizationUnavailable,
    DecryptionFailure,
    InvalidTransition,
    MalformedEnvelope,
)


class SpyCodec(EnvelopeCodec):
    """Counts decrypt calls."""

    def __init__(self):
        super().__init__()
        self.decrypt_calls = 0

    async def decrypt(self, envelope, credential_id=""):
        self.decrypt_calls += 1
        return await super().decrypt(envelope, credential_id)


class CountingOracle:
    def __init__(self, inner):
        self.inner = inner
        self.calls = 0

    async def authorize(self, credential_id, content_id):
        self.calls += 1
        return await self.inner.authorize(credential_id, content_id)


async def _setup(clock, content=b"rented content"):
    ledger = InMemoryLedger(clock=clock)
    codec = SpyCodec()
    content_id = generate_content_id()
    envelope = (await codec.encrypt(content, content_id)).to_bytes()
    listing = await ledger.create_listing(
        CreateListingCall("blob-1", content_id, "text/plain", "t", "d", 10, 0), "0xseller"
    )
    credential = await ledger.rent_access(RentAccessCall(listing.listing_id, 1, 10, 10), "0xrenter")
    oracle = CountingOracle(LedgerAuthorizationOracle(ledger, clock=clock))
    return codec, oracle, envelope, credential


@pytest.mark.anyio
async def test_approved_request_reaches_ready(clock):
    codec, oracle, envelope, credential = await _setup(clock)
    seen = []
    request = AccessRequest(codec, oracle, on_transition=lambda old, new: seen.append(new))

    result = await request.run(envelope, credential.credential_id)

    assert result.content == b"rented content"
    assert request.state == AccessState.READY
    assert request.history == [
        AccessState.IDLE,
        AccessState.REQUESTING,
        AccessState.AWAITING_APPROVAL,
        AccessState.APPROVED,
        AccessState.DECRYPTING,
        AccessState.READY,
    ]
    assert seen == request.history[1:]
    assert request.decision.approved


@pytest.mark.anyio
async def test_expired_credential_denied_without_decrypt(clock):
    codec, oracle, envelope, credential = await _setup(clock)
    clock.advance_hours(3)
    request = AccessRequest(codec, oracle)

    with pytest.raises(AccessDenied) as exc_info:
        await request.run(envelope, credential.credential_id)

    assert request.state == AccessState.DENIED
    assert request.is_terminal
    assert exc_info.value.decision.denial == DenialReason.EXPIRED
    assert codec.decrypt_calls == 0


@pytest.mark.anyio
async def test_foreign_content_id_denied_before_oracle(clock):
    codec, oracle, _, credential = await _setup(clock)
    foreign = generate_content_id(SealPolicy(package_id="0xevil"))
    envelope = (await codec.encrypt(b"x", foreign)).to_bytes()
    request = AccessRequest(codec, oracle)

    with pytest.raises(AccessDenied) as exc_info:
        await request.run(envelope, credential.credential_id)

    assert request.state == AccessState.DENIED
    assert exc_info.value.decision.denial == DenialReason.INVALID_CONTENT_ID
    assert oracle.calls == 0
    assert codec.decrypt_calls == 0


@pytest.mark.anyio
async def test_request_is_single_use(clock):
    codec, oracle, envelope, credential = await _setup(clock)
    request = AccessRequest(codec, oracle)
    await request.run(envelope, credential.credential_id)

    with pytest.raises(InvalidTransition):
        await request.run(envelope, credential.credential_id)
    assert request.state == AccessState.READY


@pytest.mark.anyio
async def test_malformed_envelope_fails(clock):
    codec, oracle, _, credential = await _setup(clock)
    request = AccessRequest(codec, oracle)
    with pytest.raises(MalformedEnvelope):
        await request.run(b"\x01\x02", credential.credential_id)
    assert request.state == AccessState.FAILED
    assert oracle.calls == 0


@pytest.mark.anyio
async def test_tampered_envelope_fails_after_approval(clock):
    codec, oracle, envelope, credential = await _setup(clock)
    corrupted = bytearray(envelope)
    corrupted[-1] ^= 0x01
    request = AccessRequest(codec, oracle)

    with pytest.raises(DecryptionFailure):
        await request.run(bytes(corrupted), credential.credential_id)
    assert request.history[-3:] == [AccessState.APPROVED, AccessState.DECRYPTING, AccessState.FAILED]


class StaticOracle:
    def __init__(self, approved):
        self.approved = approved

    async def authorize(self, credential_id, content_id):
        if self.approved:
            return AuthorizationDecision.allow(credential_id, content_id, 0)
        return AuthorizationDecision.deny(credential_id, content_id, DenialReason.EXPIRED, 0)


class UnreachableOracle:
    async def authorize(self, credential_id, content_id):
        request = httpx.Request("POST", "https://fullnode.test")
        raise httpx.ConnectError("connection refused", request=request)


@pytest.mark.anyio
async def test_withheld_key_shares_fail_as_decryption_failure():
    refusing = StaticOracle(approved=False)
    holders = [KeyShareHolder(f"ks{i}", refusing) for i in range(2)]
    codec = EnvelopeCodec(ThresholdKeyEscrow(holders, threshold=2))
    envelope = (await codec.encrypt(b"shared", generate_content_id())).to_bytes()
    request = AccessRequest(codec, StaticOracle(approved=True))

    with pytest.raises(DecryptionFailure) as exc_info:
        await request.run(envelope, "0xcred")

    assert request.state == AccessState.FAILED
    assert request.history[-3:] == [AccessState.APPROVED, AccessState.DECRYPTING, AccessState.FAILED]
    assert request.decision.approved
    assert exc_info.value.details["reason"] == "expired"
    assert isinstance(exc_info.value.__cause__, AccessDenied)


@pytest.mark.anyio
async def test_oracle_outage_is_terminal(clock):
    codec, _, envelope, credential = await _setup(clock)
    request = AccessRequest(codec, UnreachableOracle())

    with pytest.raises(AuthorizationUnavailable) as exc_info:
        await request.run(envelope, credential.credential_id)

    assert request.state == AccessState.FAILED
    assert request.is_terminal
    assert request.decision is None
    assert codec.decrypt_calls == 0
    assert exc_info.value.http_status == 503
    assert "ConnectError" in exc_info.value.details["error"]
    assert isinstance(exc_info.value.__cause__, httpx.ConnectError)

"""
Key escrow strategies for the envelope codec.

The envelope always carries a 32-byte key slot. What goes in that slot is up
to the escrow:

  - InlineKeyEscrow: the raw AES-256 key itself. Anyone holding the envelope
    can decrypt; authorization is enforced only by the protocol layer.
  - ThresholdKeyEscrow: a random 32-byte handle. The key is split k-of-n
    (Shamir over GF(256)) across KeyShareHolders, each of which releases its
    share only after the authorization oracle approves the credential.

Both produce byte-identical envelope framing, so blobs written under one
strategy are parseable by every reader.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Protocol, Sequence, Tuple

from ghostkey.errors import AccessDenied, DecryptionFailure, EncryptionError

if TYPE_CHECKING:
    from ghostkey.access.ledger import AuthorizationOracle

logger = logging.getLogger(__name__)

KEY_SLOT_SIZE = 32


class KeyEscrow(Protocol):
    name: str

    async def wrap(self, key: bytes, content_id: str) -> bytes: ...

    async def unwrap(self, slot: bytes, content_id: str, credential_id: str) -> bytes: ...


class InlineKeyEscrow:
    """Stores the raw key in the envelope slot."""

    name = "inline"

    async def wrap(self, key: bytes, content_id: str) -> bytes:
        if len(key) != KEY_SLOT_SIZE:
            raise EncryptionError("Inline escrow needs a 32-byte key", details={"length": len(key)})
        return bytes(key)

    async def unwrap(self, slot: bytes, content_id: str, credential_id: str) -> bytes:
        return bytes(slot)


# ============================================================================
# GF(256) arithmetic, polynomial 0x11D, generator 2
# ============================================================================

_GF_EXP = [0] * 512
_GF_LOG = [0] * 256


def _init_gf() -> None:
    x = 1
    for i in range(255):
        _GF_EXP[i] = x
        _GF_LOG[x] = i
        x <<= 1
        if x & 0x100:
            x ^= 0x11D
    for i in range(255, 512):
        _GF_EXP[i] = _GF_EXP[i - 255]


_init_gf()


def _gf_mul(a: int, b: int) -> int:
    if a == 0 or b == 0:
        return 0
    return _GF_EXP[_GF_LOG[a] + _GF_LOG[b]]


def _gf_div(a: int, b: int) -> int:
    if b == 0:
        raise ZeroDivisionError("division by zero in GF(256)")
    if a == 0:
        return 0
    return _GF_EXP[(_GF_LOG[a] - _GF_LOG[b]) % 255]


@dataclass(frozen=True)
class KeyShare:
    index: int  # x coordinate, 1..255
    value: bytes


def split_secret(secret: bytes, shares: int, threshold: int) -> List[KeyShare]:
    """Shamir split: any `threshold` of the `shares` outputs recover `secret`."""
    if not 1 <= threshold <= shares <= 255:
        raise ValueError(f"need 1 <= threshold <= shares <= 255, got {threshold}/{shares}")

    columns: List[bytearray] = [bytearray() for _ in range(shares)]
    for byte in secret:
        coeffs = [byte] + list(secrets.token_bytes(threshold - 1))
        for i in range(shares):
            x = i + 1
            # Horner evaluation of the polynomial at x
            acc = 0
            for c in reversed(coeffs):
                acc = _gf_mul(acc, x) ^ c
            columns[i].append(acc)
    return [KeyShare(i + 1, bytes(col)) for i, col in enumerate(columns)]


def combine_shares(parts: Sequence[KeyShare]) -> bytes:
    """Lagrange interpolation at x=0."""
    if not parts:
        raise ValueError("no shares to combine")
    xs = [p.index for p in parts]
    if len(set(xs)) != len(xs):
        raise ValueError("duplicate share index")
    length = len(parts[0].value)
    if any(len(p.value) != length for p in parts):
        raise ValueError("shares differ in length")

    out = bytearray(length)
    for j, part in enumerate(parts):
        basis = 1
        for m, xm in enumerate(xs):
            if m != j:
                basis = _gf_mul(basis, _gf_div(xm, xm ^ part.index))
        for pos in range(length):
            out[pos] ^= _gf_mul(part.value[pos], basis)
    return bytes(out)


# ============================================================================
# Share holders
# ============================================================================

class KeyShareHolder:
    """
    One independent key server.

    Holds a single share per key handle and hands it out only to a credential
    the oracle approves for the content id the share was deposited under.
    """

    def __init__(self, holder_id: str, oracle: "AuthorizationOracle"):
        self.holder_id = holder_id
        self._oracle = oracle
        self._shares: Dict[bytes, Tuple[str, KeyShare]] = {}

    async def deposit(self, handle: bytes, content_id: str, share: KeyShare) -> None:
        self._shares[bytes(handle)] = (content_id, share)

    async def release(self, handle: bytes, content_id: str, credential_id: str) -> KeyShare:
        entry = self._shares.get(bytes(handle))
        if entry is None:
            raise DecryptionFailure(
                f"Key server {self.holder_id} has no share for this envelope",
                details={"holder": self.holder_id},
            )
        bound_id, share = entry
        if bound_id != content_id:
            raise AccessDenied(f"Key server {self.holder_id}: content id mismatch")

        decision = await self._oracle.authorize(credential_id, content_id)
        if not decision.approved:
            raise AccessDenied(f"Key server {self.holder_id} refused: {decision.reason}", decision)
        return share

    def __len__(self) -> int:
        return len(self._shares)


class ThresholdKeyEscrow:
    """k-of-n key shares across independent KeyShareHolders."""

    name = "threshold"

    def __init__(self, holders: Sequence[KeyShareHolder], threshold: int):
        if not holders:
            raise ValueError("ThresholdKeyEscrow needs at least one holder")
        if not 1 <= threshold <= len(holders):
            raise ValueError(f"threshold {threshold} out of range for {len(holders)} holders")
        self.holders = list(holders)
        self.threshold = threshold

    async def wrap(self, key: bytes, content_id: str) -> bytes:
        handle = secrets.token_bytes(KEY_SLOT_SIZE)
        for holder, share in zip(self.holders, split_secret(key, len(self.holders), self.threshold)):
            await holder.deposit(handle, content_id, share)
        logger.debug(f"Key split {self.threshold}-of-{len(self.holders)} for {content_id}")
        return handle

    async def unwrap(self, slot: bytes, content_id: str, credential_id: str) -> bytes:
        collected: List[KeyShare] = []
        denials: List[AccessDenied] = []
        for holder in self.holders:
            if len(collected) >= self.threshold:
                break
            try:
                collected.append(await holder.release(slot, content_id, credential_id))
            except AccessDenied as e:
                denials.append(e)
            except DecryptionFailure as e:
                logger.warning(f"Share unavailable: {e.message}")

        if len(collected) < self.threshold:
            if denials:
                raise AccessDenied(
                    f"Only {len(collected)}/{self.threshold} key shares released",
                    denials[0].decision,
                )
            raise DecryptionFailure(
                f"Only {len(collected)}/{self.threshold} key shares available",
            )
        return combine_shares(collected)

"""
ghostkey/access/protocol.py

Purpose:
    The request -> approve -> decrypt state machine for one envelope.

States:
    IDLE -> REQUESTING -> AWAITING_APPROVAL -> APPROVED -> DECRYPTING -> READY
                                            -> DENIED               -> FAILED
    REQUESTING -> FAILED when the envelope header cannot be parsed.
    AWAITING_APPROVAL -> FAILED when the oracle itself cannot answer.

Semantics:
    - DENIED, READY and FAILED are terminal. An AccessRequest runs once; start
      a fresh one to try again. Nothing is retried automatically.
    - Denial (unrecognized content id, or oracle refusal) raises AccessDenied
      with the AuthorizationDecision attached. Decryption is never attempted.
    - Only DENIED surfaces AccessDenied. Key shares withheld while DECRYPTING
      end in FAILED with DecryptionFailure; an oracle outage ends in FAILED
      with AuthorizationUnavailable.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional

from ghostkey.access.ledger import AuthorizationOracle
from ghostkey.access.models import AuthorizationDecision, DenialReason, now_ms
from ghostkey.base.config import SealPolicy, get_config
from ghostkey.crypto.content_id import verify_content_id
from ghostkey.crypto.envelope import BytesLike, DecryptedContent, EncryptionEnvelope, EnvelopeCodec
from ghostkey.errors import (
    AccessDenied,
    AuthorizationUnavailable,
    DecryptionFailure,
    GhostKeyError,
    InvalidTransition,
)

logger = logging.getLogger(__name__)


class AccessState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    AWAITING_APPROVAL = "awaiting_approval"
    APPROVED = "approved"
    DENIED = "denied"
    DECRYPTING = "decrypting"
    READY = "ready"
    FAILED = "failed"


TRANSITIONS: Dict[AccessState, FrozenSet[AccessState]] = {
    AccessState.IDLE: frozenset({AccessState.REQUESTING}),
    AccessState.REQUESTING: frozenset({AccessState.AWAITING_APPROVAL, AccessState.FAILED}),
    AccessState.AWAITING_APPROVAL: frozenset({AccessState.APPROVED, AccessState.DENIED, AccessState.FAILED}),
    AccessState.APPROVED: frozenset({AccessState.DECRYPTING}),
    AccessState.DECRYPTING: frozenset({AccessState.READY, AccessState.FAILED}),
    AccessState.DENIED: frozenset(),
    AccessState.READY: frozenset(),
    AccessState.FAILED: frozenset(),
}

TERMINAL_STATES = frozenset(s for s, nxt in TRANSITIONS.items() if not nxt)


class AccessRequest:
    """
    One attempt to open one envelope with one credential.

    Args:
        codec: envelope codec (its escrow decides where the key comes from).
        oracle: authorization oracle consulted before any decrypt.
        policy: content id policy; defaults to the configured SealPolicy.
        on_transition: optional observer, called with (old, new) state.
    """

    def __init__(
        self,
        codec: EnvelopeCodec,
        oracle: AuthorizationOracle,
        policy: Optional[SealPolicy] = None,
        *,
        on_transition: Optional[Callable[[AccessState, AccessState], None]] = None,
    ):
        self.codec = codec
        self.oracle = oracle
        self.policy = policy or get_config().seal
        self._on_transition = on_transition
        self.state = AccessState.IDLE
        self.history: List[AccessState] = [AccessState.IDLE]
        self.decision: Optional[AuthorizationDecision] = None

    def _advance(self, new_state: AccessState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"Cannot move from {self.state.value} to {new_state.value}",
                details={"from": self.state.value, "to": new_state.value},
            )
        old, self.state = self.state, new_state
        self.history.append(new_state)
        logger.debug(f"Access request: {old.value} -> {new_state.value}")
        if self._on_transition is not None:
            self._on_transition(old, new_state)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    async def run(self, envelope: BytesLike, credential_id: str) -> DecryptedContent:
        """
        Drive the request to a terminal state.

        Raises:
            InvalidTransition: the request was already run.
            AccessDenied: content id not recognized, or the oracle refused.
            AuthorizationUnavailable: the oracle could not be consulted.
            MalformedEnvelope / DecryptionFailure: envelope unusable, or the
                key could not be recovered.
        """
        self._advance(AccessState.REQUESTING)
        try:
            header = EncryptionEnvelope.from_bytes(envelope)
        except GhostKeyError:
            self._advance(AccessState.FAILED)
            raise
        content_id = header.content_id

        self._advance(AccessState.AWAITING_APPROVAL)
        if not verify_content_id(content_id, self.policy):
            self.decision = AuthorizationDecision.deny(
                credential_id, content_id, DenialReason.INVALID_CONTENT_ID, now_ms()
            )
            self._advance(AccessState.DENIED)
            raise AccessDenied(f"Content id not issued under this policy: {content_id!r}", self.decision)

        try:
            self.decision = await self.oracle.authorize(credential_id, content_id)
        except GhostKeyError:
            self._advance(AccessState.FAILED)
            raise
        except Exception as e:
            self._advance(AccessState.FAILED)
            raise AuthorizationUnavailable(
                f"Authorization oracle unavailable: {e}",
                details={"error": f"{type(e).__name__}: {e}"},
            ) from e
        if not self.decision.approved:
            self._advance(AccessState.DENIED)
            raise AccessDenied(f"Access denied: {self.decision.reason}", self.decision)
        self._advance(AccessState.APPROVED)

        self._advance(AccessState.DECRYPTING)
        try:
            result = await self.codec.decrypt(envelope, credential_id)
        except AccessDenied as e:
            self._advance(AccessState.FAILED)
            raise DecryptionFailure(
                "Key shares withheld",
                details={"reason": e.details.get("reason")},
            ) from e
        except GhostKeyError:
            self._advance(AccessState.FAILED)
            raise
        self._advance(AccessState.READY)
        return result

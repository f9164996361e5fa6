"""
ghostkey/crypto/envelope.py

Purpose:
    Frame AES-256-GCM ciphertext together with the content id it is bound to,
    the IV and the key slot, as one self-describing byte string that can be
    stored as an opaque blob.

Layout (little-endian length prefix):
    [u32 len(content_id)][content_id UTF-8][12-byte IV][32-byte key slot][ciphertext||tag]

Semantics:
    - Every encrypt() draws a fresh key and a fresh IV from the OS CSPRNG.
    - decrypt() performs no authorization; callers gate it through
      ghostkey.access.protocol.AccessRequest.
    - The key slot holds whatever the configured KeyEscrow returns (the raw key
      for InlineKeyEscrow). Key material never reaches the log.
"""

from __future__ import annotations

import logging
import os
import struct
from dataclasses import dataclass
from typing import Optional, Union

from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ghostkey.crypto.escrow import KEY_SLOT_SIZE, InlineKeyEscrow, KeyEscrow
from ghostkey.errors import DecryptionFailure, EncryptionError, MalformedEnvelope

log = logging.getLogger(__name__)

IV_SIZE = 12
KEY_SIZE = 32
TAG_SIZE = 16
LENGTH_PREFIX = struct.Struct("<I")
MIN_ENVELOPE_SIZE = LENGTH_PREFIX.size + IV_SIZE + KEY_SLOT_SIZE
MAX_CONTENT_ID_BYTES = 0xFFFFFFFF

BytesLike = Union[bytes, bytearray, memoryview]


@dataclass(frozen=True)
class EncryptionEnvelope:
    content_id: str
    iv: bytes
    key_material: bytes
    ciphertext: bytes

    def to_bytes(self) -> bytes:
        if not isinstance(self.content_id, str):
            raise EncryptionError(
                "content_id must be a string",
                details={"type": type(self.content_id).__name__},
            )
        id_bytes = self.content_id.encode("utf-8")
        if len(id_bytes) > MAX_CONTENT_ID_BYTES:
            raise EncryptionError("content_id too long for a u32 length prefix")
        if len(self.iv) != IV_SIZE or len(self.key_material) != KEY_SLOT_SIZE:
            raise EncryptionError(
                "IV or key slot has the wrong size",
                details={"iv": len(self.iv), "key": len(self.key_material)},
            )
        return b"".join(
            (LENGTH_PREFIX.pack(len(id_bytes)), id_bytes, self.iv, self.key_material, self.ciphertext)
        )

    @classmethod
    def from_bytes(cls, data: BytesLike) -> "EncryptionEnvelope":
        """
        Parse an envelope.

        Raises:
            MalformedEnvelope: buffer shorter than the fixed header, declared
                content-id length running past the buffer, or a content id
                that is not valid UTF-8.
        """
        buf = bytes(data)
        if len(buf) < MIN_ENVELOPE_SIZE:
            raise MalformedEnvelope(
                "Envelope shorter than fixed header",
                details={"length": len(buf), "minimum": MIN_ENVELOPE_SIZE},
            )

        (id_len,) = LENGTH_PREFIX.unpack_from(buf, 0)
        offset = LENGTH_PREFIX.size
        if offset + id_len + IV_SIZE + KEY_SLOT_SIZE > len(buf):
            raise MalformedEnvelope(
                "Declared content id length exceeds envelope",
                details={"declared": id_len, "length": len(buf)},
            )

        try:
            content_id = buf[offset:offset + id_len].decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedEnvelope("Content id is not valid UTF-8") from e
        offset += id_len

        iv = buf[offset:offset + IV_SIZE]
        offset += IV_SIZE
        key_material = buf[offset:offset + KEY_SLOT_SIZE]
        offset += KEY_SLOT_SIZE

        return cls(content_id=content_id, iv=iv, key_material=key_material, ciphertext=buf[offset:])

    def __len__(self) -> int:
        return (
            LENGTH_PREFIX.size
            + len(self.content_id.encode("utf-8"))
            + IV_SIZE
            + KEY_SLOT_SIZE
            + len(self.ciphertext)
        )


@dataclass(frozen=True)
class DecryptedContent:
    content: bytes
    content_id: str


class EnvelopeCodec:
    """
    AES-256-GCM envelope encryption.

    Args:
        escrow: where the per-envelope key is kept. Defaults to
            InlineKeyEscrow (raw key in the envelope).
        bind_content_id: pass the content id as GCM associated data, so a
            content id swapped into another envelope fails the tag check.
            Off by default; envelopes written with it on only decrypt with it on.
    """

    def __init__(self, escrow: Optional[KeyEscrow] = None, *, bind_content_id: bool = False):
        self.escrow: KeyEscrow = escrow or InlineKeyEscrow()
        self.bind_content_id = bind_content_id

    def _aad(self, content_id: str) -> Optional[bytes]:
        return content_id.encode("utf-8") if self.bind_content_id else None

    async def encrypt(self, content: BytesLike, content_id: str) -> EncryptionEnvelope:
        """
        Encrypt content under a fresh key and IV.

        Raises:
            EncryptionError: AEAD primitive unavailable, or inputs that
                cannot be framed.
        """
        if not isinstance(content_id, str):
            raise EncryptionError(
                "content_id must be a string",
                details={"type": type(content_id).__name__},
            )
        if len(content_id.encode("utf-8")) > MAX_CONTENT_ID_BYTES:
            raise EncryptionError("content_id too long for a u32 length prefix")

        key = AESGCM.generate_key(bit_length=KEY_SIZE * 8)
        iv = os.urandom(IV_SIZE)
        try:
            ciphertext = AESGCM(key).encrypt(iv, bytes(content), self._aad(content_id))
        except UnsupportedAlgorithm as e:
            raise EncryptionError("AES-256-GCM is unavailable on this platform") from e
        except (TypeError, OverflowError) as e:
            raise EncryptionError(f"Cannot encrypt content: {e}") from e

        key_material = await self.escrow.wrap(key, content_id)
        envelope = EncryptionEnvelope(
            content_id=content_id,
            iv=iv,
            key_material=key_material,
            ciphertext=ciphertext,
        )
        log.debug(f"Sealed {len(content)} bytes for {content_id} ({self.escrow.name} escrow)")
        return envelope

    async def decrypt(self, envelope: BytesLike, credential_id: str = "") -> DecryptedContent:
        """
        Parse and decrypt an envelope. No authorization happens here.

        Raises:
            MalformedEnvelope: framing errors (see EncryptionEnvelope.from_bytes).
            DecryptionFailure: tag mismatch or unusable key/IV.
        """
        parsed = EncryptionEnvelope.from_bytes(envelope)
        key = await self.escrow.unwrap(parsed.key_material, parsed.content_id, credential_id)

        try:
            content = AESGCM(key).decrypt(parsed.iv, parsed.ciphertext, self._aad(parsed.content_id))
        except InvalidTag as e:
            raise DecryptionFailure(
                "Authentication tag mismatch",
                details={"content_id": parsed.content_id},
            ) from e
        except (ValueError, TypeError) as e:
            raise DecryptionFailure(f"Unusable key or IV: {e}") from e
        except UnsupportedAlgorithm as e:
            raise DecryptionFailure("AES-256-GCM is unavailable on this platform") from e

        return DecryptedContent(content=content, content_id=parsed.content_id)


_default_codec = EnvelopeCodec()


async def encrypt(content: BytesLike, content_id: str) -> bytes:
    """Encrypt with the inline escrow and return the serialized envelope."""
    envelope = await _default_codec.encrypt(content, content_id)
    return envelope.to_bytes()


async def decrypt(envelope: BytesLike, credential_id: str = "") -> DecryptedContent:
    return await _default_codec.decrypt(envelope, credential_id)

"""
ghostkey/identity/derivation.py

Purpose:
    Derive a wallet-style address and a session signing keypair from a login
    subject, persist it, and hand back the same address on every later login
    until the identity is cleared.

Derivation:
    salt    = sha256("ghostkey_salt_" + subject).hexdigest()
    address = "0x" + sha256(salt + base64(ed25519_public_key)).hexdigest()
    validity_epoch_bound = current_epoch + validity_window_epochs (10)

Persisted keys (KeyValueStore):
    ghostkey_ephemeral_keypair   base64 raw Ed25519 private key
    ghostkey_zklogin_address     derived address
    ghostkey_randomness          16 random bytes, hex
    ghostkey_max_epoch           validity epoch bound
    ghostkey_user_salt           salt
    ghostkey:fauceted:{address}  provisioning marker

Known limitation:
    Updates are plain read-modify-write on the store with no isolation. One
    active session per storage scope is assumed.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import secrets
from dataclasses import dataclass
from typing import Optional, Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from ghostkey.base.config import ChainConfig, get_config
from ghostkey.errors import IdentityDerivationError
from ghostkey.identity.epoch import EpochSource, SuiEpochSource
from ghostkey.identity.store import KeyValueStore

log = logging.getLogger(__name__)

EPHEMERAL_KEYPAIR_KEY = "ghostkey_ephemeral_keypair"
ADDRESS_KEY = "ghostkey_zklogin_address"
RANDOMNESS_KEY = "ghostkey_randomness"
MAX_EPOCH_KEY = "ghostkey_max_epoch"
USER_SALT_KEY = "ghostkey_user_salt"
PROVISIONED_KEY_PREFIX = "ghostkey:fauceted:"

IDENTITY_KEYS = (EPHEMERAL_KEYPAIR_KEY, ADDRESS_KEY, RANDOMNESS_KEY, MAX_EPOCH_KEY, USER_SALT_KEY)

SALT_NAMESPACE = "ghostkey_salt_"
ADDRESS_SCHEME = "0x"
RANDOMNESS_BYTES = 16


@dataclass(frozen=True)
class DerivedAddress:
    address: str
    is_new_identity: bool


@dataclass(frozen=True)
class IdentityState:
    address: str
    ephemeral_keypair: Ed25519PrivateKey
    salt: str
    randomness: Optional[str]
    validity_epoch_bound: Optional[int]

    @property
    def public_key_b64(self) -> str:
        return public_key_b64(self.ephemeral_keypair)


def derive_salt(login_subject_id: str) -> str:
    return hashlib.sha256(f"{SALT_NAMESPACE}{login_subject_id}".encode("utf-8")).hexdigest()


def public_key_b64(keypair: Ed25519PrivateKey) -> str:
    raw = keypair.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return base64.b64encode(raw).decode("ascii")


def compute_address(salt: str, ephemeral_public_key_b64: str) -> str:
    """Pure function of (salt, public key); SHA-256 keeps it collision resistant."""
    digest = hashlib.sha256(f"{salt}{ephemeral_public_key_b64}".encode("utf-8")).hexdigest()
    return f"{ADDRESS_SCHEME}{digest}"


def _encode_keypair(keypair: Ed25519PrivateKey) -> str:
    raw = keypair.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return base64.b64encode(raw).decode("ascii")


def _decode_keypair(value: str) -> Ed25519PrivateKey:
    raw = base64.b64decode(value, validate=True)
    return Ed25519PrivateKey.from_private_bytes(raw)


class IdentityManager:
    """
    Identity derivation over an injected KeyValueStore.

    Usage:
        manager = IdentityManager(MemoryKeyValueStore())
        derived = await manager.derive_address("google|1234", id_token)
    """

    def __init__(
        self,
        store: KeyValueStore,
        epoch_source: Optional[EpochSource] = None,
        chain: Optional[ChainConfig] = None,
    ):
        self.store = store
        self.chain = chain or get_config().chain
        self.epoch_source = epoch_source or SuiEpochSource(self.chain)

    async def _load_keypair(self) -> Optional[Ed25519PrivateKey]:
        stored = await self.store.get(EPHEMERAL_KEYPAIR_KEY)
        if not stored:
            return None
        try:
            return _decode_keypair(stored)
        except (binascii.Error, ValueError) as e:
            log.warning(f"Stored ephemeral keypair is unreadable, ignoring it: {e}")
            return None

    async def _get_or_create_keypair(self) -> Tuple[Ed25519PrivateKey, bool]:
        keypair = await self._load_keypair()
        if keypair is not None:
            return keypair, False
        keypair = Ed25519PrivateKey.generate()
        await self.store.set(EPHEMERAL_KEYPAIR_KEY, _encode_keypair(keypair))
        return keypair, True

    async def derive_address(self, login_subject_id: str, login_token: str) -> DerivedAddress:
        """
        Return the persisted address, or derive and persist a new one.

        Raises:
            IdentityDerivationError: missing subject/token, or the epoch query
                failed. Not retried; nothing is persisted on failure except
                the ephemeral keypair.
        """
        if not login_subject_id:
            raise IdentityDerivationError("login subject id is required")
        if not login_token:
            raise IdentityDerivationError("login token is required")

        address = await self.store.get(ADDRESS_KEY)
        salt = await self.store.get(USER_SALT_KEY)
        if address and salt:
            log.debug(f"Reusing persisted identity {address}")
            return DerivedAddress(address=address, is_new_identity=False)

        keypair, _ = await self._get_or_create_keypair()
        randomness = await self.store.get(RANDOMNESS_KEY) or secrets.token_hex(RANDOMNESS_BYTES)
        salt = derive_salt(login_subject_id)

        current_epoch = await self.epoch_source.current_epoch()
        max_epoch = current_epoch + self.chain.validity_window_epochs

        address = compute_address(salt, public_key_b64(keypair))

        await self.store.set(RANDOMNESS_KEY, randomness)
        await self.store.set(MAX_EPOCH_KEY, str(max_epoch))
        await self.store.set(USER_SALT_KEY, salt)
        await self.store.set(ADDRESS_KEY, address)

        log.info(f"Derived new identity {address} (valid through epoch {max_epoch})")
        return DerivedAddress(address=address, is_new_identity=True)

    async def load_state(self) -> Optional[IdentityState]:
        """The persisted IdentityState, or None when not fully initialized."""
        address = await self.store.get(ADDRESS_KEY)
        salt = await self.store.get(USER_SALT_KEY)
        keypair = await self._load_keypair()
        if not (address and salt and keypair is not None):
            return None

        raw_epoch = await self.store.get(MAX_EPOCH_KEY)
        try:
            max_epoch = int(raw_epoch) if raw_epoch else None
        except ValueError:
            log.warning(f"Ignoring unreadable epoch bound: {raw_epoch!r}")
            max_epoch = None

        return IdentityState(
            address=address,
            ephemeral_keypair=keypair,
            salt=salt,
            randomness=await self.store.get(RANDOMNESS_KEY),
            validity_epoch_bound=max_epoch,
        )

    async def is_initialized(self) -> bool:
        return await self.load_state() is not None

    async def clear_identity(self) -> None:
        for key in IDENTITY_KEYS:
            await self.store.delete(key)
        log.info("Identity cleared")

    # ------------------------------------------------------------------
    # Provisioning marker ("already funded" per address)
    # ------------------------------------------------------------------

    async def is_provisioned(self, address: str) -> bool:
        return await self.store.get(f"{PROVISIONED_KEY_PREFIX}{address}") == "true"

    async def mark_provisioned(self, address: str) -> None:
        await self.store.set(f"{PROVISIONED_KEY_PREFIX}{address}", "true")

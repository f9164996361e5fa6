"""
Content identifiers ("seal ids").

A content id binds an envelope to the on-chain function that approves its
decryption:

    {package_id}::{module_name}::{approval_function}::{nonce}

The nonce is 128 bits from the OS CSPRNG, hex encoded (32 chars), so ids are
unique with overwhelming probability.
"""

from __future__ import annotations

import secrets
from typing import Optional

from ghostkey.base.config import SealPolicy, get_config

NONCE_BYTES = 16


def _policy(policy: Optional[SealPolicy]) -> SealPolicy:
    return policy or get_config().seal


def generate_content_id(policy: Optional[SealPolicy] = None) -> str:
    return f"{_policy(policy).prefix}{secrets.token_hex(NONCE_BYTES)}"


def verify_content_id(content_id: object, policy: Optional[SealPolicy] = None) -> bool:
    """True iff content_id carries this deployment's exact policy prefix."""
    if not isinstance(content_id, str):
        return False
    return content_id.startswith(_policy(policy).prefix)

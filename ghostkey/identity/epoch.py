"""
Current-epoch query against the chain's JSON-RPC endpoint.

Identity derivation only needs one number from the chain: the current epoch,
to compute how long an ephemeral key stays valid.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx

from ghostkey.base.config import ChainConfig, get_config
from ghostkey.errors import IdentityDerivationError

logger = logging.getLogger(__name__)

SYSTEM_STATE_METHOD = "suix_getLatestSuiSystemState"


class EpochSource(Protocol):
    async def current_epoch(self) -> int: ...


class FixedEpochSource:
    """Always answers the same epoch. Offline use and tests."""

    def __init__(self, epoch: int):
        self.epoch = epoch

    async def current_epoch(self) -> int:
        return self.epoch


class SuiEpochSource:
    """
    Reads result.epoch from suix_getLatestSuiSystemState.

    A single request, not retried: callers surface the failure as
    IdentityDerivationError and the user tries the login again.
    """

    def __init__(
        self,
        config: Optional[ChainConfig] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or get_config().chain
        self._transport = transport

    async def current_epoch(self) -> int:
        payload = {"jsonrpc": "2.0", "id": 1, "method": SYSTEM_STATE_METHOD, "params": []}
        try:
            async with httpx.AsyncClient(
                transport=self._transport, timeout=self.config.request_timeout
            ) as client:
                response = await client.post(self.config.rpc_url, json=payload)
                response.raise_for_status()
                body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Epoch query failed: {e}")
            raise IdentityDerivationError(
                f"Could not fetch current epoch: {e}",
                details={"rpc_url": self.config.rpc_url},
            ) from e

        if isinstance(body, dict) and "error" in body:
            raise IdentityDerivationError(
                "Epoch query returned an RPC error",
                details={"error": body["error"]},
            )
        try:
            return int(body["result"]["epoch"])
        except (KeyError, TypeError, ValueError) as e:
            raise IdentityDerivationError(
                "Epoch missing from system state response",
                details={"body": str(body)[:200]},
            ) from e

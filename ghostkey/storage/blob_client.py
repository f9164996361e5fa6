"""
ghostkey/storage/blob_client.py

Purpose:
    Upload and download opaque envelope bytes to a content-addressed blob
    store over HTTP.

Contract:
    - upload(): PUT {publisher}/v1/blobs?epochs=N, raw bytes in, blob id out.
      Identical bytes may map to an existing blob id (alreadyCertified).
    - download(): GET {aggregator}/v1/blobs/{blob_id}, raw bytes out.
    - 429/503 and transport failures are retried with capped exponential
      backoff; every other non-2xx status aborts at once with BlobRejected.
    - Exhaustion raises UploadExhausted/DownloadExhausted, or
      TransportUnreachable when the last failure never reached the store.

Architecture:
    One httpx.AsyncClient per BlobStoreClient, treated as immutable
    configuration plus a connection pool, so a single client can serve
    concurrent transfers without locking. BlobClientCache hands out one client
    per configuration instead of a module-level singleton.
"""

from __future__ import annotations

import asyncio
import importlib.util
import logging
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import quote, urlparse

import httpx
from pydantic import ValidationError

from ghostkey.base.config import BlobStoreConfig, RetryConfig, get_config
from ghostkey.errors import (
    BlobRejected,
    ConfigError,
    DownloadExhausted,
    InvalidBlobResponse,
    RateLimited,
    TransportUnreachable,
    UnsupportedPlatform,
    UploadExhausted,
)
from ghostkey.net.backoff import (
    BackoffPolicy,
    CancellationToken,
    RetryEvent,
    SleepFn,
    run_with_backoff,
)
from ghostkey.storage.models import StoreResponse

log = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 503})
MAX_KEEPALIVE = 20
MAX_CONNECTIONS = 50


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, (RateLimited, httpx.TransportError))


class BlobStoreClient:
    """
    Async client for the blob store publisher/aggregator pair.

    Use create_blob_client() (or BlobClientCache.get()) rather than calling
    the constructor directly; the factory validates the platform first.
    """

    def __init__(
        self,
        config: BlobStoreConfig,
        policy: BackoffPolicy,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: SleepFn = asyncio.sleep,
        on_retry: Optional[Callable[[RetryEvent], None]] = None,
    ):
        self.config = config
        self.policy = policy
        self._sleep = sleep
        self._on_retry = on_retry
        self._client = httpx.AsyncClient(
            transport=transport,
            limits=httpx.Limits(
                max_keepalive_connections=MAX_KEEPALIVE,
                max_connections=MAX_CONNECTIONS,
            ),
            headers={"User-Agent": config.user_agent},
            timeout=config.request_timeout,
            follow_redirects=True,
        )

        self._uploads = 0
        self._downloads = 0
        self._attempts_total = 0
        self._retries_total = 0
        self._failures_total = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_closed(self) -> bool:
        return self._client.is_closed

    async def aclose(self) -> None:
        if not self._client.is_closed:
            await self._client.aclose()
            log.debug("BlobStoreClient closed.")

    async def __aenter__(self) -> "BlobStoreClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    async def upload(
        self,
        data: bytes,
        *,
        via_relay: bool = False,
        cancel: Optional[CancellationToken] = None,
    ) -> str:
        """
        Store data and return its blob id.

        Args:
            data: envelope bytes (sent as-is, application/octet-stream).
            via_relay: send through the configured same-origin relay instead
                of the publisher. The relay answers with the same JSON shape.
            cancel: optional cancellation token.

        Raises:
            UploadExhausted, TransportUnreachable, BlobRejected,
            InvalidBlobResponse, Cancelled
        """
        if via_relay:
            if not self.config.relay_url:
                raise ConfigError("No relay_url configured for relay upload")
            url, params = self.config.relay_url, None
        else:
            url = f"{self.config.publisher_url.rstrip('/')}/v1/blobs"
            params = {"epochs": str(self.config.store_epochs)}

        payload = bytes(data)

        async def _attempt(attempt: int) -> str:
            self._attempts_total += 1
            response = await self._client.put(
                url,
                content=payload,
                params=params,
                headers={"Content-Type": "application/octet-stream"},
            )
            self._check_status(response, url)
            return self._parse_store_response(response)

        def _exhausted(exc: BaseException, attempts: int) -> BaseException:
            self._failures_total += 1
            if isinstance(exc, httpx.TransportError):
                return TransportUnreachable(
                    f"Blob store unreachable for upload: {exc}",
                    operation="upload",
                    attempts=attempts,
                    last_error=exc,
                )
            return UploadExhausted(
                f"Upload failed after {attempts} attempt(s)",
                attempts=attempts,
                last_error=exc,
            )

        try:
            blob_id = await run_with_backoff(
                _attempt,
                policy=self.policy,
                is_retryable=_is_retryable,
                on_exhausted=_exhausted,
                label="blob upload",
                sleep=self._sleep,
                cancel=cancel,
                on_retry=self._record_retry,
            )
        except (BlobRejected, InvalidBlobResponse):
            self._failures_total += 1
            raise
        self._uploads += 1
        log.info(f"Blob upload successful: {blob_id} ({len(payload)} bytes)")
        return blob_id

    async def download(
        self,
        blob_id: str,
        *,
        cancel: Optional[CancellationToken] = None,
    ) -> bytes:
        """
        Fetch the bytes stored under blob_id.

        Raises:
            DownloadExhausted, TransportUnreachable, BlobRejected, Cancelled
        """
        if not blob_id or not blob_id.strip():
            raise BlobRejected(400, self.config.aggregator_url, "empty blob id")
        url = f"{self.config.aggregator_url.rstrip('/')}/v1/blobs/{quote(blob_id.strip(), safe='')}"

        async def _attempt(attempt: int) -> bytes:
            self._attempts_total += 1
            response = await self._client.get(url)
            self._check_status(response, url)
            return response.content

        def _exhausted(exc: BaseException, attempts: int) -> BaseException:
            self._failures_total += 1
            if isinstance(exc, httpx.TransportError):
                return TransportUnreachable(
                    f"Blob store unreachable for download: {exc}",
                    operation="download",
                    attempts=attempts,
                    last_error=exc,
                )
            return DownloadExhausted(
                f"Download of {blob_id} failed after {attempts} attempt(s)",
                attempts=attempts,
                last_error=exc,
            )

        try:
            data = await run_with_backoff(
                _attempt,
                policy=self.policy,
                is_retryable=_is_retryable,
                on_exhausted=_exhausted,
                label="blob download",
                sleep=self._sleep,
                cancel=cancel,
                on_retry=self._record_retry,
            )
        except BlobRejected:
            self._failures_total += 1
            raise
        self._downloads += 1
        log.debug(f"Blob download successful: {blob_id} ({len(data)} bytes)")
        return data

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _check_status(response: httpx.Response, url: str) -> None:
        if response.status_code in RETRYABLE_STATUS_CODES:
            raise RateLimited(response.status_code, url)
        if not response.is_success:
            raise BlobRejected(response.status_code, url, response.text)

    @staticmethod
    def _parse_store_response(response: httpx.Response) -> str:
        try:
            parsed = StoreResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise InvalidBlobResponse(
                "Blob store returned an unparseable response",
                details={"body": response.text[:200]},
                last_error=exc,
            ) from exc
        if not parsed.blob_id:
            raise InvalidBlobResponse(
                "No blob ID in blob store response",
                details={"body": response.text[:200]},
            )
        log.debug(f"Blob store outcome: {parsed.outcome}")
        return parsed.blob_id

    def _record_retry(self, event: RetryEvent) -> None:
        self._retries_total += 1
        if self._on_retry is not None:
            self._on_retry(event)

    def metrics(self) -> Dict[str, Any]:
        return {
            "uploads": self._uploads,
            "downloads": self._downloads,
            "attempts_total": self._attempts_total,
            "retries_total": self._retries_total,
            "failures_total": self._failures_total,
            "max_attempts": self.policy.max_attempts,
        }


# ============================================================================
# Factory + cache
# ============================================================================

def _probe_platform(config: BlobStoreConfig) -> None:
    """Fail fast when the configured endpoints cannot be served here."""
    urls = [config.publisher_url, config.aggregator_url]
    if config.relay_url:
        urls.append(config.relay_url)

    for url in urls:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise UnsupportedPlatform(
                f"Blob store endpoint is not an http(s) URL: {url!r}",
                details={"url": url},
            )
        if parsed.scheme == "https" and importlib.util.find_spec("ssl") is None:
            raise UnsupportedPlatform(
                "TLS support (ssl module) is unavailable on this interpreter",
                details={"url": url},
            )


def create_blob_client(
    config: Optional[BlobStoreConfig] = None,
    retry: Optional[RetryConfig] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    sleep: SleepFn = asyncio.sleep,
    on_retry: Optional[Callable[[RetryEvent], None]] = None,
) -> BlobStoreClient:
    """
    Build a BlobStoreClient after probing platform support.

    Raises:
        UnsupportedPlatform: endpoints are not http(s) or TLS is missing.
    """
    if config is None or retry is None:
        cfg = get_config()
        config = config or cfg.blob_store
        retry = retry or cfg.retry
    policy = BackoffPolicy.from_config(retry)
    _probe_platform(config)
    return BlobStoreClient(config, policy, transport=transport, sleep=sleep, on_retry=on_retry)


class BlobClientCache:
    """
    One BlobStoreClient per (BlobStoreConfig, RetryConfig) pair.

    Owned by the calling context; call aclose() when that context shuts down.
    """

    def __init__(self, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport
        self._clients: Dict[Tuple[BlobStoreConfig, RetryConfig], BlobStoreClient] = {}

    def get(
        self,
        config: Optional[BlobStoreConfig] = None,
        retry: Optional[RetryConfig] = None,
    ) -> BlobStoreClient:
        if config is None or retry is None:
            cfg = get_config()
            config = config or cfg.blob_store
            retry = retry or cfg.retry
        key = (config, retry)
        client = self._clients.get(key)
        if client is None or client.is_closed:
            client = create_blob_client(key[0], key[1], transport=self._transport)
            self._clients[key] = client
        return client

    def __len__(self) -> int:
        return len(self._clients)

    async def aclose(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.aclose()

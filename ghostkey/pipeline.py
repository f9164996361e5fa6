"""
ghostkey/pipeline.py

Purpose:
    The two end-to-end flows the application drives, with stage reporting so
    a caller can tell which step failed.

    publish: ENCRYPT -> UPLOAD -> LIST
    open:    LOOKUP -> DOWNLOAD -> DECRYPT

Semantics:
    - A GhostKeyError raised inside a stage is tagged with err.stage and
      re-raised unchanged in kind.
    - on_stage(stage) is called as each stage starts.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterator, Optional

from ghostkey.access.ledger import AuthorizationOracle, LedgerAuthorizationOracle, LedgerClient
from ghostkey.access.models import AccessCredential, CreateListingCall, Listing
from ghostkey.access.protocol import AccessRequest
from ghostkey.base.config import SealPolicy, get_config
from ghostkey.crypto.content_id import generate_content_id
from ghostkey.crypto.envelope import EnvelopeCodec
from ghostkey.errors import GhostKeyError, LedgerNotFound
from ghostkey.net.backoff import CancellationToken
from ghostkey.storage.blob_client import BlobStoreClient

logger = logging.getLogger(__name__)


class PipelineStage(str, Enum):
    ENCRYPT = "encrypt"
    UPLOAD = "upload"
    LIST = "list"
    LOOKUP = "lookup"
    DOWNLOAD = "download"
    DECRYPT = "decrypt"


@dataclass(frozen=True)
class PublishResult:
    content_id: str
    blob_id: str
    listing: Listing
    envelope_size: int


@dataclass(frozen=True)
class OpenResult:
    content: bytes
    content_id: str
    listing: Listing
    credential: AccessCredential


class ContentPipeline:
    def __init__(
        self,
        blob_client: BlobStoreClient,
        ledger: LedgerClient,
        *,
        codec: Optional[EnvelopeCodec] = None,
        oracle: Optional[AuthorizationOracle] = None,
        policy: Optional[SealPolicy] = None,
        on_stage: Optional[Callable[[PipelineStage], None]] = None,
    ):
        self.blob_client = blob_client
        self.ledger = ledger
        self.codec = codec or EnvelopeCodec()
        self.oracle = oracle or LedgerAuthorizationOracle(ledger)
        self.policy = policy or get_config().seal
        self._on_stage = on_stage

    @contextmanager
    def _stage(self, stage: PipelineStage) -> Iterator[None]:
        if self._on_stage is not None:
            self._on_stage(stage)
        try:
            yield
        except GhostKeyError as e:
            e.stage = stage.value
            logger.error(f"Pipeline failed at {stage.value}: {e}")
            raise

    async def publish(
        self,
        content: bytes,
        *,
        seller: str,
        title: str,
        description: str = "",
        mime_type: str = "application/octet-stream",
        base_price: int = 0,
        price_slope: int = 0,
        via_relay: bool = False,
        cancel: Optional[CancellationToken] = None,
    ) -> PublishResult:
        """Encrypt content, upload the envelope and list it on the ledger."""
        with self._stage(PipelineStage.ENCRYPT):
            content_id = generate_content_id(self.policy)
            envelope = (await self.codec.encrypt(content, content_id)).to_bytes()

        with self._stage(PipelineStage.UPLOAD):
            blob_id = await self.blob_client.upload(envelope, via_relay=via_relay, cancel=cancel)

        with self._stage(PipelineStage.LIST):
            listing = await self.ledger.create_listing(
                CreateListingCall(
                    blob_id=blob_id,
                    content_id=content_id,
                    mime_type=mime_type,
                    title=title,
                    description=description,
                    base_price=base_price,
                    price_slope=price_slope,
                ),
                seller,
            )

        logger.info(f"Published {content_id} as blob {blob_id}, listing {listing.listing_id}")
        return PublishResult(content_id, blob_id, listing, len(envelope))

    async def open(
        self,
        credential_id: str,
        *,
        cancel: Optional[CancellationToken] = None,
    ) -> OpenResult:
        """Resolve a credential to its listing, fetch the envelope and decrypt it."""
        with self._stage(PipelineStage.LOOKUP):
            credential = await self.ledger.get_credential(credential_id)
            if credential is None:
                raise LedgerNotFound(f"Credential {credential_id} not found")
            listing = await self.ledger.get_listing(credential.listing_id)
            if listing is None:
                raise LedgerNotFound(f"Listing {credential.listing_id} not found")

        with self._stage(PipelineStage.DOWNLOAD):
            envelope = await self.blob_client.download(listing.blob_id, cancel=cancel)

        with self._stage(PipelineStage.DECRYPT):
            request = AccessRequest(self.codec, self.oracle, self.policy)
            result = await request.run(envelope, credential_id)

        return OpenResult(result.content, result.content_id, listing, credential)

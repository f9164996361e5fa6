"""
Same-origin upload relay.

Browsers cannot always PUT straight to the publisher (origin restrictions), so
a caller that gets TransportUnreachable can send the envelope here instead.
The relay forwards the raw bytes to {publisher}/v1/blobs?epochs=N and mirrors
the publisher's status, body and content type back.

    PUT  /api/walrus/upload   -> upstream reply, plus Access-Control-Allow-Origin: *
    *    /api/walrus/upload   -> 405 {"error": "Method not allowed"}
    upstream transport error  -> 503 {"error": "Upload failed"}
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

import httpx
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse, Response

from ghostkey.base.config import BlobStoreConfig, get_config

logger = logging.getLogger(__name__)

RELAY_PATH = "/api/walrus/upload"
_ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def build_relay_router(
    config: BlobStoreConfig,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> APIRouter:
    router = APIRouter(tags=["relay"])
    upstream_url = f"{config.publisher_url.rstrip('/')}/v1/blobs"

    @router.get("/health")
    async def health_check():
        """Simple health check endpoint."""
        return {"status": "ok", "timestamp": asyncio.get_running_loop().time()}

    @router.api_route(RELAY_PATH, methods=_ALL_METHODS)
    async def relay_upload(request: Request):
        """Forward a raw envelope upload to the publisher."""
        if request.method != "PUT":
            return JSONResponse({"error": "Method not allowed"}, status_code=405)

        body = await request.body()
        try:
            async with httpx.AsyncClient(
                transport=transport,
                timeout=config.request_timeout,
                headers={"User-Agent": config.user_agent},
            ) as client:
                upstream = await client.put(
                    upstream_url,
                    params={"epochs": str(config.store_epochs)},
                    content=body,
                    headers={"Content-Type": "application/octet-stream"},
                )
        except httpx.HTTPError as e:
            logger.error(f"Relay upstream error: {e}")
            return JSONResponse({"error": "Upload failed"}, status_code=503)

        logger.info(f"Relayed {len(body)} bytes -> upstream status {upstream.status_code}")
        return Response(
            content=upstream.content,
            status_code=upstream.status_code,
            media_type=upstream.headers.get("content-type", "application/json"),
            headers={"Access-Control-Allow-Origin": "*"},
        )

    return router


def create_relay_app(
    config: Optional[BlobStoreConfig] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Build the relay application; transport is injectable for tests."""
    config = config or get_config().blob_store
    app = FastAPI(title="GhostKey Upload Relay")
    app.include_router(build_relay_router(config, transport=transport))
    return app

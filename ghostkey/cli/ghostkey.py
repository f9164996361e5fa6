"""
GhostKey CLI - envelope tooling and the upload relay.

Usage examples:
    ghostkey seal photo.jpg photo.gk
    ghostkey upload photo.gk
    ghostkey download <blob_id> photo.gk
    ghostkey unseal photo.gk photo.jpg
    ghostkey relay --port 8787
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

from ghostkey.base.config import get_config, setup_logging
from ghostkey.errors import GhostKeyError


async def _seal(src: Path, dst: Path) -> None:
    from ghostkey.crypto import encrypt, generate_content_id

    content_id = generate_content_id()
    envelope = await encrypt(src.read_bytes(), content_id)
    dst.write_bytes(envelope)
    print(f"Sealed {src} -> {dst}")
    print(f"content id: {content_id}")


async def _unseal(src: Path, dst: Path) -> None:
    from ghostkey.crypto import decrypt

    result = await decrypt(src.read_bytes())
    dst.write_bytes(result.content)
    print(f"Unsealed {src} -> {dst}")
    print(f"content id: {result.content_id}")


async def _upload(src: Path, via_relay: bool) -> None:
    from ghostkey.storage import create_blob_client

    async with create_blob_client() as client:
        blob_id = await client.upload(src.read_bytes(), via_relay=via_relay)
    print(blob_id)


async def _download(blob_id: str, dst: Path) -> None:
    from ghostkey.storage import create_blob_client

    async with create_blob_client() as client:
        data = await client.download(blob_id)
    dst.write_bytes(data)
    print(f"Downloaded {blob_id} ({len(data)} bytes) -> {dst}")


def _serve_relay(host: Optional[str], port: Optional[int]) -> None:
    import uvicorn
    from ghostkey.storage.relay import create_relay_app

    config = get_config()
    uvicorn.run(
        create_relay_app(config.blob_store),
        host=host or config.relay_host,
        port=port or config.relay_port,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ghostkey", description="GhostKey envelope tooling")
    sub = parser.add_subparsers(dest="command", required=True)

    relay = sub.add_parser("relay", help="Serve the same-origin upload relay")
    relay.add_argument("--host", default=None)
    relay.add_argument("--port", type=int, default=None)

    seal = sub.add_parser("seal", help="Encrypt a file into an envelope")
    seal.add_argument("input", type=Path)
    seal.add_argument("output", type=Path)

    unseal = sub.add_parser("unseal", help="Decrypt an inline-key envelope (no authorization)")
    unseal.add_argument("input", type=Path)
    unseal.add_argument("output", type=Path)

    upload = sub.add_parser("upload", help="Upload a file to the blob store, print its blob id")
    upload.add_argument("input", type=Path)
    upload.add_argument("--via-relay", action="store_true")

    download = sub.add_parser("download", help="Download a blob to a file")
    download.add_argument("blob_id")
    download.add_argument("output", type=Path)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()

    try:
        if args.command == "relay":
            _serve_relay(args.host, args.port)
        elif args.command == "seal":
            asyncio.run(_seal(args.input, args.output))
        elif args.command == "unseal":
            asyncio.run(_unseal(args.input, args.output))
        elif args.command == "upload":
            asyncio.run(_upload(args.input, args.via_relay))
        elif args.command == "download":
            asyncio.run(_download(args.blob_id, args.output))
    except GhostKeyError as e:
        print(e.to_json(), file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

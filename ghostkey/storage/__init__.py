"""
Content-addressed blob storage.

- blob_client.py: async upload/download with retry/backoff, client cache
- models.py: publisher response shapes
- relay.py: same-origin upload relay (FastAPI)
"""
from ghostkey.storage.blob_client import BlobClientCache, BlobStoreClient, create_blob_client

__all__ = ["BlobClientCache", "BlobStoreClient", "create_blob_client"]

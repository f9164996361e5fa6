from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class BlobObject(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    blob_id: str = Field(..., alias="blobId", min_length=1)


class NewlyCreated(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    blob_object: BlobObject = Field(..., alias="blobObject")


class AlreadyCertified(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    blob_id: str = Field(..., alias="blobId", min_length=1)


class StoreResponse(BaseModel):
    """
    Publisher reply to PUT /v1/blobs.

    Exactly one of the two tags is expected; either one yields a usable blob id.
    Identical bytes may come back as alreadyCertified with an existing id.
    """
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    newly_created: Optional[NewlyCreated] = Field(None, alias="newlyCreated")
    already_certified: Optional[AlreadyCertified] = Field(None, alias="alreadyCertified")

    @property
    def blob_id(self) -> Optional[str]:
        if self.newly_created is not None:
            return self.newly_created.blob_object.blob_id
        if self.already_certified is not None:
            return self.already_certified.blob_id
        return None

    @property
    def outcome(self) -> str:
        if self.newly_created is not None:
            return "newly_created"
        if self.already_certified is not None:
            return "already_certified"
        return "unknown"

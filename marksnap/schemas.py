from datetime import datetime
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator


class CaptureImageIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    hash: str = Field(min_length=1, max_length=128)
    data: str = Field(validation_alias=AliasChoices("base64_bytes", "bytes", "data"))
    mime_type: Optional[str] = Field(default=None, validation_alias=AliasChoices("mime_type", "type"))


class SnapshotCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    html: str = Field(min_length=1, validation_alias=AliasChoices("html", "html_content"))
    title: str = Field(min_length=1)
    source_url: str = Field(min_length=1, validation_alias=AliasChoices("source_url", "url"))
    images: List[CaptureImageIn] = Field(default_factory=list)
    force: bool = False


class SnapshotOut(BaseModel):
    id: str
    bookmark_id: str
    version: int
    is_latest: bool
    content_hash: str
    file_size: int
    mime_type: str
    format: str
    title: Optional[str] = None
    source_url: Optional[str] = None
    status: str
    image_count: int = 0
    created_at: datetime


class SnapshotCreated(SnapshotOut):
    view_url: Optional[str] = None
    images_stored: int = 0
    images_reused: int = 0
    images_skipped: List[str] = Field(default_factory=list)


class SnapshotDuplicate(BaseModel):
    is_duplicate: bool = True
    message: str = "Content unchanged, snapshot not created"
    snapshot: Optional[SnapshotOut] = None


class SnapshotList(BaseModel):
    items: List[SnapshotOut]
    total: int


class SnapshotCleanupRequest(BaseModel):
    keep_count: Optional[int] = Field(default=None, ge=1)
    older_than_days: Optional[int] = Field(default=None, gt=0)
    verify_and_fix: bool = False

    @model_validator(mode="after")
    def _exactly_one_policy(self) -> "SnapshotCleanupRequest":
        chosen = sum(
            [self.keep_count is not None, self.older_than_days is not None, bool(self.verify_and_fix)]
        )
        if chosen != 1:
            raise ValueError("Provide exactly one of keep_count, older_than_days or verify_and_fix")
        return self


class CleanupOut(BaseModel):
    deleted_count: int
    freed_space: int
    message: str


class ViewUrlOut(BaseModel):
    url: str
    signature: str
    expires_at: int
    owner_id: str
    action: str


class StorageQuotaOut(BaseModel):
    used_bytes: int
    limit_bytes: Optional[int] = None
    unlimited: bool


class StatusResponse(BaseModel):
    status: str = "ok"
    version: str = "0.1.0"

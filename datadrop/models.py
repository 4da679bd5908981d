from typing import Optional

from sqlmodel import Field, SQLModel

UPLOAD_TYPE_CDN = "cdn"
UPLOAD_TYPE_PRIVATE = "private"

STATUS_PENDING = "pending"
STATUS_UPLOADED = "uploaded"
STATUS_READY = "ready"
STATUS_ABORTED = "aborted"


class FileRecord(SQLModel, table=True):
    __tablename__ = "files"

    id: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    file_name: str
    file_type: str
    file_size: int
    bucket: str
    s3_key: str
    upload_type: str  # "cdn" or "private", never changes
    cdn_url: Optional[str] = Field(default=None, nullable=True)
    status: str = Field(default=STATUS_PENDING)
    created_at: str

    # Private files only. ttl is the epoch-seconds reclamation marker, expires_at its ISO form.
    ttl: Optional[int] = Field(default=None, nullable=True, index=True)
    expires_at: Optional[str] = Field(default=None, nullable=True)
    max_downloads: Optional[int] = Field(default=None, nullable=True)
    download_count: Optional[int] = Field(default=None, nullable=True)

    # Multipart scratch state, present only while a chunked transfer is open
    upload_id: Optional[str] = Field(default=None, nullable=True)
    part_count: Optional[int] = Field(default=None, nullable=True)
    part_size: Optional[int] = Field(default=None, nullable=True)

    @property
    def is_cdn(self) -> bool:
        return self.upload_type == UPLOAD_TYPE_CDN

    @property
    def has_open_multipart(self) -> bool:
        return self.upload_id is not None

    def clear_multipart(self) -> None:
        self.upload_id = None
        self.part_count = None
        self.part_size = None


class CliAuthRequest(SQLModel, table=True):
    __tablename__ = "cli_auth_requests"

    id: str = Field(primary_key=True)
    display_code: str
    status: str = Field(default="pending")
    cli_token: Optional[str] = Field(default=None, nullable=True)
    token_expires_at: Optional[str] = Field(default=None, nullable=True)
    user_id: Optional[str] = Field(default=None, nullable=True)
    email: Optional[str] = Field(default=None, nullable=True)
    name: Optional[str] = Field(default=None, nullable=True)
    ttl: int = Field(index=True)

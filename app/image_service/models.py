from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
from pydantic import BaseModel, Field
from uuid import uuid4

def new_image_id() -> str:
    """Generates a new unique image ID."""
    return str(uuid4())

def utc_now_iso() -> str:
    """ISO-8601 timestamp in the ``2024-01-01T00:00:00.000Z`` form stored in containers."""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"

class ContainerMetadata(BaseModel):
    """Metadata block written into a new container. Keys are camelCase on disk."""
    id: str = Field(default_factory=new_image_id)
    originalName: str
    mimeType: str
    size: int
    encryptedAt: str = Field(default_factory=utc_now_iso)
    uploadDate: Optional[str] = None
    tags: List[str] = []
    sourcePath: Optional[str] = None

    def to_block(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)

class ImageItem(BaseModel):
    image_id: str
    original_name: Optional[str]
    mime_type: Optional[str]
    size: Optional[int]
    file_size: int
    tags: List[str]
    album: str
    encrypted_at: Optional[str]
    updated_at: Optional[str] = None

class UploadResponse(BaseModel):
    image_id: str
    name: str
    album: str
    tags: List[str]
    encrypted_at: str

class ListImagesResponse(BaseModel):
    images: List[ImageItem]
    total: int
    page: int
    pages: int

class AlbumItem(BaseModel):
    name: str
    image_count: int

class ListAlbumsResponse(BaseModel):
    albums: List[AlbumItem]

class KeyRequest(BaseModel):
    key: str

class TagsUpdateRequest(BaseModel):
    key: str
    tags: List[str]

class DecryptResponse(BaseModel):
    image: str  # data URL
    metadata: Dict[str, Any]
    album: str

class TagsResponse(BaseModel):
    image_id: str
    tags: List[str]
    updated_at: str

from fastapi import APIRouter, Depends, UploadFile, File, Form, Query, Response
from typing import Optional
import logging

from app.storage.vault import VaultStorage
from app.dependencies.dependencies import get_vault_storage
from app.image_service import service
from app.image_service.models import (
    DecryptResponse, ImageItem, KeyRequest, ListImagesResponse, TagsResponse,
    TagsUpdateRequest, UploadResponse,
)
from app.exceptions import InvalidImageException
from app.settings import settings

log = logging.getLogger(__name__)

router = APIRouter(
    prefix="/images",
    tags=["image-vault"]
)

@router.post("", response_model=UploadResponse, status_code=201)
async def upload_image(
    file: UploadFile = File(...),
    key: str = Form(...),
    name: Optional[str] = Form(None),
    tags: Optional[str] = Form(None),  # JSON array or Comma Separated Values
    album: Optional[str] = Form(None),
    response: Response = None,
    storage: VaultStorage = Depends(get_vault_storage),
):
    """Encrypts an uploaded image into a new container."""
    # Add security header
    if response:
        response.headers["X-Content-Type-Options"] = "nosniff"

    # Pre-check content-type
    if file.content_type not in service.ALLOWED_IMAGE_TYPES:
        raise InvalidImageException(f"Unsupported content type: {file.content_type}")

    service.check_key(key)
    tags_list = service.parse_tags_field(tags)

    contents = await file.read()
    if len(contents) > settings.max_upload_bytes:
        raise InvalidImageException(
            f"Image exceeds the {settings.max_upload_bytes} byte upload limit"
        )

    # Validate actual file content
    content_type = service.validate_image_bytes(contents, file.content_type)

    meta, location = service.save_image(
        storage=storage,
        contents=contents,
        filename=file.filename or "image",
        content_type=content_type,
        key=key,
        name=name,
        tags=tags_list,
        album=album,
    )
    return UploadResponse(
        image_id=meta.id,
        name=meta.originalName,
        album=location.album,
        tags=meta.tags,
        encrypted_at=meta.encryptedAt,
    )

@router.get("", response_model=ListImagesResponse)
def list_images_handler(
    album: Optional[str] = Query(None),
    tag: Optional[str] = Query(None),
    q: Optional[str] = Query(None, description="Search in names and tags"),
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1, le=200),
    storage: VaultStorage = Depends(get_vault_storage),
):
    """Lists images newest first, without decrypting them."""
    resp = service.fetch_images(storage, album=album, tag=tag, q=q, page=page, limit=limit)
    return ListImagesResponse(**resp)

@router.get("/{image_id}", response_model=ImageItem)
def get_image(
    image_id: str,
    storage: VaultStorage = Depends(get_vault_storage),
):
    """Gets image metadata."""
    return service.to_item(service.get_image_meta(storage, image_id))

@router.post("/{image_id}/decrypt", response_model=DecryptResponse)
def decrypt_image(
    image_id: str,
    body: KeyRequest,
    storage: VaultStorage = Depends(get_vault_storage),
):
    """Decrypts an image and returns it as a data URL."""
    plaintext, metadata, album = service.decrypt_image(storage, image_id, body.key)
    return DecryptResponse(
        image=service.to_data_url(metadata.get("mimeType"), plaintext),
        metadata=metadata,
        album=album,
    )

@router.post("/{image_id}/thumbnail", response_model=DecryptResponse)
def get_thumbnail(
    image_id: str,
    body: KeyRequest,
    size: Optional[int] = Query(None, ge=16, le=1024),
    storage: VaultStorage = Depends(get_vault_storage),
):
    """Decrypts an image and returns a downscaled copy."""
    plaintext, metadata, album = service.decrypt_image(storage, image_id, body.key)
    thumb, mime_type = service.make_thumbnail(plaintext, metadata.get("mimeType"), size)
    return DecryptResponse(
        image=service.to_data_url(mime_type, thumb),
        metadata=metadata,
        album=album,
    )

@router.post("/{image_id}/tags", response_model=TagsResponse)
def update_tags(
    image_id: str,
    body: TagsUpdateRequest,
    storage: VaultStorage = Depends(get_vault_storage),
):
    """Replaces the tags of an image. Requires the key."""
    metadata = service.update_tags(storage, image_id, body.key, body.tags)
    return TagsResponse(
        image_id=image_id,
        tags=metadata["tags"],
        updated_at=metadata["updatedAt"],
    )

@router.delete("/{image_id}", status_code=204)
def delete_image(
    image_id: str,
    storage: VaultStorage = Depends(get_vault_storage),
):
    """Deletes an image container."""
    service.remove_image(storage, image_id)
    return Response(status_code=204)

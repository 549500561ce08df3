from fastapi import APIRouter, Depends, Query
from typing import Optional

from app.storage.vault import VaultStorage
from app.dependencies.dependencies import get_vault_storage
from app.image_service import service
from app.image_service.models import AlbumItem, ListAlbumsResponse, ListImagesResponse

router = APIRouter(
    prefix="/albums",
    tags=["image-vault"]
)

@router.get("", response_model=ListAlbumsResponse)
def list_albums_handler(storage: VaultStorage = Depends(get_vault_storage)):
    """Lists albums with their image counts. ``default`` is the vault root."""
    albums = service.list_albums(storage)
    return ListAlbumsResponse(
        albums=[AlbumItem(name=a["name"], image_count=a["imageCount"]) for a in albums]
    )

@router.get("/{album}/images", response_model=ListImagesResponse)
def list_album_images(
    album: str,
    tag: Optional[str] = Query(None),
    q: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1, le=200),
    storage: VaultStorage = Depends(get_vault_storage),
):
    resp = service.fetch_images(storage, album=album, tag=tag, q=q, page=page, limit=limit)
    return ListImagesResponse(**resp)

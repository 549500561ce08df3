import base64
import json
import math
import logging
from io import BytesIO
from typing import Any, Dict, List, Optional, Tuple

from PIL import Image, UnidentifiedImageError

from app.container import codec
from app.container.errors import InvalidKey, MalformedContainer
from app.storage.vault import (
    DEFAULT_ALBUM, AlbumNotFound, ContainerNotFound, Location, VaultStorage, is_safe_name,
)
from app.image_service.models import ContainerMetadata, ImageItem, utc_now_iso
from app.settings import settings
from app.exceptions import (
    AlbumNotFoundException, CorruptContainerException, ImageNotFoundException,
    InvalidImageException, InvalidKeyException, InvalidRequestException, StorageException,
)

log = logging.getLogger(__name__)

# Allowed content types
ALLOWED_IMAGE_TYPES = {
    "image/png",
    "image/jpeg",
    "image/gif",
    "image/webp",
    "image/bmp",
    "image/heif",
    "image/heic",
}

# Formats Pillow can open without plugins
PIL_FORMATS = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "GIF": "image/gif",
    "WEBP": "image/webp",
    "BMP": "image/bmp",
}

def validate_image_bytes(file_bytes: bytes, content_type: str) -> str:
    """Validate that the uploaded file is a real image, return its MIME type."""
    if content_type in set(PIL_FORMATS.values()):
        try:
            img = Image.open(BytesIO(file_bytes))
            img.load()
            mime_type = PIL_FORMATS.get((img.format or "").upper())
            if mime_type not in ALLOWED_IMAGE_TYPES:
                raise InvalidImageException(f"Unsupported image type: {mime_type}")
            return mime_type
        except Exception:
            raise InvalidImageException("Invalid image file")
    elif content_type in {"image/heif", "image/heic"}:
        # no decoder available, accept on content type alone
        if not file_bytes:
            raise InvalidImageException("Empty image file")
        return content_type
    else:
        raise InvalidImageException(f"Unsupported content type: {content_type}")

def check_text(value: str, field: str) -> str:
    """Reject strings that cannot be stored as UTF-8 (lone surrogates)."""
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        raise InvalidRequestException(f"{field} is not valid UTF-8 text")
    return value

def check_key(key: Optional[str]) -> str:
    if not key or len(key) < settings.min_key_length:
        raise InvalidRequestException(
            f"Encryption key must be at least {settings.min_key_length} characters"
        )
    return check_text(key, "key")

def normalize_tags(tags: List[Any]) -> List[str]:
    """Strip, lowercase and de-duplicate tags, keeping first-seen order."""
    seen = []
    for tag in tags:
        if not isinstance(tag, str):
            raise InvalidRequestException("Tags must be strings")
        tag = check_text(tag, "tags").strip().lower()
        if tag and tag not in seen:
            seen.append(tag)
    return seen

def parse_tags_field(raw: Optional[str]) -> List[str]:
    """Tags arrive as a JSON array or as comma separated values."""
    if not raw or not raw.strip():
        return []
    raw = raw.strip()
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            raise InvalidRequestException("tags is not a valid JSON array")
        if not isinstance(parsed, list):
            raise InvalidRequestException("tags is not a valid JSON array")
        return normalize_tags(parsed)
    return normalize_tags(raw.split(","))

def _locate(storage: VaultStorage, image_id: str) -> Location:
    try:
        return storage.locate(image_id)
    except ContainerNotFound:
        raise ImageNotFoundException(image_id)

def _read(location: Location) -> bytes:
    try:
        return location.path.read_bytes()
    except FileNotFoundError:
        raise ImageNotFoundException(location.path.stem)
    except OSError as e:
        log.error(f"Reading {location.path} failed: {e}")
        raise StorageException(f"Failed to read image: {e}")

def save_image(
    storage: VaultStorage,
    contents: bytes,
    filename: str,
    content_type: str,
    key: str,
    name: Optional[str] = None,
    tags: Optional[List[str]] = None,
    album: Optional[str] = None,
    source_path: Optional[str] = None,
) -> Tuple[ContainerMetadata, Location]:
    """Encrypts an upload into a new container."""
    check_key(key)
    album = album or DEFAULT_ALBUM
    if album != DEFAULT_ALBUM and not is_safe_name(album):
        raise InvalidRequestException(f"Invalid album name: {album}")

    now = utc_now_iso()
    meta = ContainerMetadata(
        originalName = check_text(name or filename, "name"),
        mimeType = content_type,
        size = len(contents),
        encryptedAt = now,
        uploadDate = now,
        tags = normalize_tags(tags or []),
        sourcePath = source_path,
    )
    container = codec.encode(contents, key, meta.to_block())
    try:
        location = storage.write(meta.id, container, album=album)
    except OSError as e:
        log.error(f"Writing container failed: {e}")
        raise StorageException(f"Failed to store image: {e}")

    log.info("Encrypted image %s into album %s", meta.id, album)
    return meta, location

def _timestamp(metadata: Dict[str, Any]) -> str:
    return metadata.get("uploadDate") or metadata.get("encryptedAt") or ""

def _matches(metadata: Dict[str, Any], tag: Optional[str], q: Optional[str]) -> bool:
    tags = [t.lower() for t in metadata.get("tags", []) if isinstance(t, str)]
    if tag and tag.strip().lower() not in tags:
        return False
    if q:
        needle = q.strip().lower()
        name = str(metadata.get("originalName", "")).lower()
        if needle not in name and not any(needle in t for t in tags):
            return False
    return True

def to_item(entry: Dict[str, Any]) -> ImageItem:
    metadata = entry["metadata"]
    return ImageItem(
        image_id=metadata["id"],
        original_name=metadata.get("originalName"),
        mime_type=metadata.get("mimeType"),
        size=metadata.get("size"),
        file_size=entry["file_size"],
        tags=metadata.get("tags", []),
        album=entry["album"],
        encrypted_at=_timestamp(metadata) or None,
        updated_at=metadata.get("updatedAt"),
    )

def fetch_images(
    storage: VaultStorage,
    album: Optional[str] = None,
    tag: Optional[str] = None,
    q: Optional[str] = None,
    page: int = 1,
    limit: Optional[int] = None,
) -> Dict[str, Any]:
    """Lists containers newest first, filtered by album, tag and search text."""
    limit = limit or settings.page_size_default
    try:
        entries = storage.scan_metadata(album)
    except AlbumNotFound as e:
        raise AlbumNotFoundException(e.album)
    except OSError as e:
        log.error(f"Scanning vault failed: {e}")
        raise StorageException(f"Failed to list images: {e}")

    entries = [e for e in entries if _matches(e["metadata"], tag, q)]
    entries.sort(key=lambda e: _timestamp(e["metadata"]), reverse=True)

    total = len(entries)
    pages = max(1, math.ceil(total / limit))
    start = (page - 1) * limit
    return {
        "images": [to_item(e) for e in entries[start:start + limit]],
        "total": total,
        "page": page,
        "pages": pages,
    }

def list_albums(storage: VaultStorage) -> List[Dict[str, Any]]:
    try:
        return storage.list_albums()
    except OSError as e:
        log.error(f"Listing albums failed: {e}")
        raise StorageException(f"Failed to list albums: {e}")

def get_image_meta(storage: VaultStorage, image_id: str) -> Dict[str, Any]:
    """Reads container metadata without the key."""
    try:
        return storage.read_metadata(image_id)
    except (ContainerNotFound, FileNotFoundError):
        raise ImageNotFoundException(image_id)
    except MalformedContainer:
        raise CorruptContainerException(image_id)

def decrypt_image(storage: VaultStorage, image_id: str, key: str) -> Tuple[bytes, Dict[str, Any], str]:
    """Returns (plaintext, metadata, album)."""
    check_text(key, "key")
    location = _locate(storage, image_id)
    container = _read(location)
    log.debug("Decrypting %s with key length %d", image_id, len(key))
    try:
        plaintext, metadata = codec.decode(container, key)
    except InvalidKey:
        raise InvalidKeyException()
    except MalformedContainer:
        raise CorruptContainerException(image_id)
    return plaintext, metadata, location.album

def to_data_url(mime_type: Optional[str], data: bytes) -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{mime_type or 'image/jpeg'};base64,{encoded}"

def make_thumbnail(data: bytes, mime_type: Optional[str], size: Optional[int] = None) -> Tuple[bytes, str]:
    """Downscale to fit a ``size`` square. Formats Pillow cannot open pass through."""
    size = size or settings.thumbnail_size
    try:
        img = Image.open(BytesIO(data))
        img.thumbnail((size, size))
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError):
        return data, mime_type or "application/octet-stream"

    buf = BytesIO()
    if img.mode in ("RGBA", "LA", "P"):
        img.save(buf, format="PNG")
        return buf.getvalue(), "image/png"
    img.convert("RGB").save(buf, format="JPEG", quality=80)
    return buf.getvalue(), "image/jpeg"

def update_tags(storage: VaultStorage, image_id: str, key: str, tags: List[str]) -> Dict[str, Any]:
    """Replaces the tag list; the payload is re-encrypted under a new IV."""
    check_text(key, "key")
    tags = normalize_tags(tags)
    location = _locate(storage, image_id)
    container = _read(location)

    def mutate(metadata: Dict[str, Any]) -> Dict[str, Any]:
        metadata["tags"] = tags
        metadata["updatedAt"] = utc_now_iso()
        return metadata

    try:
        rewritten = codec.rewrite_metadata(container, key, mutate)
    except InvalidKey:
        raise InvalidKeyException()
    except MalformedContainer:
        raise CorruptContainerException(image_id)

    try:
        storage.replace(location, rewritten)
    except OSError as e:
        log.error(f"Replacing container {image_id} failed: {e}")
        raise StorageException(f"Failed to update image: {e}")

    log.info("Updated tags of %s", image_id)
    return codec.peek_metadata(rewritten)

def remove_image(storage: VaultStorage, image_id: str):
    """Deletes the container file."""
    try:
        storage.delete(image_id)
    except (ContainerNotFound, FileNotFoundError):
        raise ImageNotFoundException(image_id)
    except OSError as e:
        log.error(f"Deleting {image_id} failed: {e}")
        raise StorageException(f"Failed to delete image: {e}")
    log.info("Deleted image %s", image_id)
    return True

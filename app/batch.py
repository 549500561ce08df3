"""
    Batch encryption and decryption of whole directories.
"""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from app.container import codec
from app.container.errors import InvalidKey, MalformedContainer
from app.exceptions import APIException
from app.image_service import service
from app.storage.vault import VaultStorage

log = logging.getLogger(__name__)

MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
    ".heif": "image/heif",
    ".heic": "image/heic",
}


@dataclass
class BatchResult:
    succeeded: List[Dict[str, str]] = field(default_factory=list)
    failed: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "successful": len(self.succeeded),
            "failed": len(self.failed),
            "results": self.succeeded + self.failed,
        }


def find_images(source: Path, recursive: bool = False) -> List[Path]:
    pattern = "**/*" if recursive else "*"
    return sorted(
        p for p in source.glob(pattern)
        if p.is_file() and p.suffix.lower() in MIME_TYPES
    )


def batch_encrypt(
    storage: VaultStorage,
    source: Path,
    key: str,
    recursive: bool = False,
    album: Optional[str] = None,
    prefix: Optional[str] = None,
    tags: Optional[List[str]] = None,
) -> BatchResult:
    """Encrypt every image under ``source`` into the vault."""
    service.check_key(key)
    result = BatchResult()
    images = find_images(source, recursive)
    log.info("Found %d image(s) in %s", len(images), source)

    for index, path in enumerate(images, start=1):
        relative = path.relative_to(source).as_posix()
        ext = path.suffix.lower()
        name = f"{prefix} {index}{ext}" if prefix else path.name
        try:
            meta, _ = service.save_image(
                storage=storage,
                contents=path.read_bytes(),
                filename=path.name,
                content_type=MIME_TYPES[ext],
                key=key,
                name=name,
                tags=tags,
                album=album,
                source_path=relative,
            )
        except (OSError, APIException) as e:
            log.error("[%d/%d] %s failed: %s", index, len(images), relative, e)
            result.failed.append({"original": relative, "error": str(e)})
            continue
        log.info("[%d/%d] %s -> %s.enc", index, len(images), relative, meta.id)
        result.succeeded.append({"original": relative, "id": meta.id, "name": name})
    return result


def _output_path(directory: Path, name: str, image_id: str) -> Path:
    # original names may repeat across uploads
    safe = Path(name).name
    if safe in ("", ".", ".."):
        safe = f"{image_id}.bin"
    target = directory / safe
    if target.exists():
        target = directory / f"{Path(safe).stem}_{image_id[:8]}{Path(safe).suffix}"
    return target


def batch_decrypt(
    storage: VaultStorage,
    key: str,
    output: Path,
    album: Optional[str] = None,
) -> BatchResult:
    """Decrypt every container (or one album) into ``output/<album>/``."""
    result = BatchResult()
    for location in storage.iter_containers(album):
        image_id = location.path.stem
        try:
            plaintext, metadata = codec.decode(location.path.read_bytes(), key)
        except InvalidKey:
            log.error("%s: invalid key", image_id)
            result.failed.append({"id": image_id, "error": "Invalid decryption key"})
            continue
        except (OSError, MalformedContainer) as e:
            log.error("%s: %s", image_id, e)
            result.failed.append({"id": image_id, "error": str(e)})
            continue

        directory = output / location.album
        directory.mkdir(parents=True, exist_ok=True)
        target = _output_path(directory, metadata.get("originalName") or f"{image_id}.bin", image_id)
        target.write_bytes(plaintext)
        log.info("%s -> %s", image_id, target)
        result.succeeded.append({"id": image_id, "output": str(target)})
    return result

import os
import re
import tempfile
import logging
from pathlib import Path
from typing import Any, Dict, Iterator, List, NamedTuple, Optional

from app.container.codec import read_metadata_from_file
from app.container.errors import MalformedContainer
from app.settings import settings

log = logging.getLogger(__name__)

DEFAULT_ALBUM = "default"
CONTAINER_SUFFIX = ".enc"

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9 _.-]*$")


class ContainerNotFound(LookupError):
    def __init__(self, image_id: str):
        self.image_id = image_id
        super().__init__(image_id)


class AlbumNotFound(LookupError):
    def __init__(self, album: str):
        self.album = album
        super().__init__(album)


class Location(NamedTuple):
    path: Path
    album: str


def is_safe_name(name: str) -> bool:
    """Ids and album names must stay a single path component."""
    return bool(name) and bool(_NAME_RE.match(name)) and ".." not in name


# -------------------------
# Vault Storage
# -------------------------
class VaultStorage:
    """Containers on the local filesystem.

    ``<root>/<id>.enc`` belongs to the ``default`` album, every direct
    subdirectory of the root is another album.
    """
    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or settings.vault_dir).resolve()
        log.info("Initialized vault storage at %s", self.root)

        # Ensure root exists at initialization
        self.ensure_root()

    def ensure_root(self):
        if not self.root.is_dir():
            self.root.mkdir(parents=True, exist_ok=True)
            log.info("Created vault directory %s", self.root)

    def album_path(self, album: str) -> Path:
        if album == DEFAULT_ALBUM:
            return self.root
        if not is_safe_name(album):
            raise AlbumNotFound(album)
        return self.root / album

    def album_names(self) -> List[str]:
        names = [
            entry.name for entry in self.root.iterdir()
            if entry.is_dir() and is_safe_name(entry.name) and entry.name != DEFAULT_ALBUM
        ]
        return [DEFAULT_ALBUM] + sorted(names)

    def _container_files(self, directory: Path) -> List[Path]:
        return sorted(
            p for p in directory.iterdir()
            if p.is_file() and p.suffix == CONTAINER_SUFFIX
        )

    def list_albums(self) -> List[Dict[str, Any]]:
        return [
            {"name": name, "imageCount": len(self._container_files(self.album_path(name)))}
            for name in self.album_names()
        ]

    def iter_containers(self, album: Optional[str] = None) -> Iterator[Location]:
        albums = self.album_names() if album is None else [album]
        for name in albums:
            directory = self.album_path(name)
            if not directory.is_dir():
                raise AlbumNotFound(name)
            for path in self._container_files(directory):
                yield Location(path, name)

    def scan_metadata(self, album: Optional[str] = None) -> List[Dict[str, Any]]:
        """Header-only read of every container, payloads are never decrypted."""
        items = []
        for location in self.iter_containers(album):
            try:
                with open(location.path, "rb") as f:
                    metadata = read_metadata_from_file(f)
            except MalformedContainer as e:
                log.warning("Skipping malformed container %s: %s", location.path, e)
                continue
            metadata.setdefault("id", location.path.stem)
            items.append({
                "metadata": metadata,
                "album": location.album,
                "file_size": location.path.stat().st_size,
            })
        return items

    def locate(self, image_id: str) -> Location:
        """Find ``image_id`` in the root first, then in each album."""
        if not is_safe_name(image_id):
            raise ContainerNotFound(image_id)
        filename = image_id + CONTAINER_SUFFIX
        for album in self.album_names():
            path = self.album_path(album) / filename
            if path.is_file():
                return Location(path, album)
        raise ContainerNotFound(image_id)

    def read(self, image_id: str) -> bytes:
        location = self.locate(image_id)
        return location.path.read_bytes()

    def read_metadata(self, image_id: str) -> Dict[str, Any]:
        """Header of one container, in the same shape as scan_metadata entries."""
        location = self.locate(image_id)
        with open(location.path, "rb") as f:
            metadata = read_metadata_from_file(f)
        metadata.setdefault("id", image_id)
        return {
            "metadata": metadata,
            "album": location.album,
            "file_size": location.path.stat().st_size,
        }

    def _atomic_write(self, path: Path, data: bytes):
        # temp file lives next to the target so os.replace stays on one filesystem
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def write(self, image_id: str, data: bytes, album: str = DEFAULT_ALBUM) -> Location:
        if not is_safe_name(image_id):
            raise ValueError(f"Unsafe image id: {image_id!r}")
        directory = self.album_path(album)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / (image_id + CONTAINER_SUFFIX)
        self._atomic_write(path, data)
        log.debug("Wrote %s (%d bytes)", path, len(data))
        return Location(path, album)

    def replace(self, location: Location, data: bytes):
        self._atomic_write(location.path, data)
        log.debug("Replaced %s (%d bytes)", location.path, len(data))

    def delete(self, image_id: str) -> Location:
        location = self.locate(image_id)
        location.path.unlink()
        log.debug("Deleted %s", location.path)
        return location

    def close(self):
        log.info("Closed vault storage")

"""
    Reader for the old two-file layout and migration to single-file containers.

    Old layout: ``<id>.enc`` holds ``[16-byte IV][ciphertext]`` and a sidecar
    ``<id>.json`` holds the metadata. The ciphertext is reused untouched, so
    migration does not need the passphrase.
"""
import json
import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Tuple

from app.container.codec import IV_SIZE, frame
from app.container.errors import MalformedContainer

log = logging.getLogger(__name__)


@dataclass
class MigrationReport:
    migrated: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)


def sidecar_path(enc_path: Path) -> Path:
    return enc_path.with_suffix(".json")


def is_legacy_pair(enc_path: Path) -> bool:
    return enc_path.is_file() and sidecar_path(enc_path).is_file()


def read_legacy(enc_path: Path, json_path: Path) -> Tuple[Dict[str, Any], bytes, bytes]:
    """Return (metadata, iv, ciphertext) from an old-format pair."""
    data = enc_path.read_bytes()
    if len(data) < IV_SIZE:
        raise MalformedContainer(f"{enc_path.name} is too short to hold an IV")
    try:
        with open(json_path, "r", encoding="utf-8") as f:
            metadata = json.load(f)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedContainer(f"{json_path.name} is not valid JSON: {e}") from None
    if not isinstance(metadata, dict):
        raise MalformedContainer(f"{json_path.name} does not hold a JSON object")
    return metadata, data[:IV_SIZE], data[IV_SIZE:]


def migrate_pair(enc_path: Path) -> None:
    json_path = sidecar_path(enc_path)
    metadata, iv, ciphertext = read_legacy(enc_path, json_path)

    backup = enc_path.with_name(enc_path.name + ".backup")
    backup.write_bytes(enc_path.read_bytes())

    tmp = enc_path.with_name(enc_path.name + ".tmp")
    try:
        tmp.write_bytes(frame(metadata, iv, ciphertext))
        os.replace(tmp, enc_path)
    except Exception:
        tmp.unlink(missing_ok=True)
        os.replace(backup, enc_path)
        raise

    json_path.unlink()
    backup.unlink()


def migrate_directory(root: Path) -> MigrationReport:
    """Convert every old-format pair directly under ``root``."""
    report = MigrationReport()
    for json_path in sorted(root.glob("*.json")):
        image_id = json_path.stem
        enc_path = json_path.with_suffix(".enc")
        if not enc_path.is_file():
            log.warning("Skipping %s: no matching .enc file", image_id)
            report.skipped.append(image_id)
            continue
        try:
            migrate_pair(enc_path)
        except (OSError, MalformedContainer) as e:
            log.error("Failed to migrate %s: %s", image_id, e)
            report.failed[image_id] = str(e)
            continue
        log.info("Migrated %s", image_id)
        report.migrated.append(image_id)
    return report

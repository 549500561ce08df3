import argparse
import getpass
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from app.batch import batch_decrypt, batch_encrypt
from app.container.legacy import migrate_directory
from app.exceptions import APIException
from app.image_service import service
from app.settings import settings
from app.storage.vault import AlbumNotFound, VaultStorage

log = logging.getLogger("image-vault")


def _read_key(given: Optional[str], confirm: bool = False) -> str:
    if given:
        return given
    key = getpass.getpass("Key: ")
    if confirm and getpass.getpass("Confirm key: ") != key:
        raise SystemExit("Keys do not match")
    return key


def cmd_encrypt(args, storage: VaultStorage) -> int:
    source = Path(args.source).resolve()
    if not source.is_dir():
        log.error(f"Not a directory: {source}")
        return 1
    key = _read_key(args.key, confirm=True)
    tags = service.parse_tags_field(args.tags)
    result = batch_encrypt(
        storage, source, key,
        recursive=args.recursive, album=args.album, prefix=args.prefix, tags=tags,
    )
    log.info(f"Encrypted: {len(result.succeeded)}, failed: {len(result.failed)}")

    if args.report:
        report = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "sourceDirectory": str(source),
            "recursive": args.recursive,
            **result.to_dict(),
        }
        report_path = Path(f"encryption-report-{int(datetime.now().timestamp())}.json")
        report_path.write_text(json.dumps(report, indent=2), encoding="utf-8")
        log.info(f"Report saved to {report_path}")
    return 1 if result.failed else 0


def cmd_decrypt(args, storage: VaultStorage) -> int:
    key = _read_key(args.key)
    try:
        result = batch_decrypt(storage, key, Path(args.output), album=args.album)
    except AlbumNotFound as e:
        log.error(f"Album not found: {e.album}")
        return 1
    log.info(f"Decrypted: {len(result.succeeded)}, failed: {len(result.failed)}")
    return 1 if result.failed else 0


def cmd_migrate(args, storage: VaultStorage) -> int:
    report = migrate_directory(storage.root)
    log.info(
        f"Migrated: {len(report.migrated)}, skipped: {len(report.skipped)}, failed: {len(report.failed)}"
    )
    return 1 if report.failed else 0


def cmd_inspect(args, storage: VaultStorage) -> int:
    if args.image_id:
        entries = [service.get_image_meta(storage, args.image_id)]
    else:
        entries = storage.scan_metadata()
    for entry in entries:
        print(json.dumps({"album": entry["album"], **entry["metadata"]}, ensure_ascii=False))
    return 0


def cmd_serve(args, storage: VaultStorage) -> int:
    # the app opens its own storage from settings
    settings.vault_dir = str(storage.root)
    from app.main import run
    run(host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vault", description="Encrypted image vault")
    parser.add_argument("--vault", "-v", default=None, help=f"Vault directory (default: {settings.vault_dir})")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    enc = sub.add_parser("encrypt", help="Encrypt every image in a directory")
    enc.add_argument("source", help="Directory holding the images")
    enc.add_argument("--recursive", "-r", action="store_true", help="Scan subdirectories")
    enc.add_argument("--album", "-a", default=None, help="Target album")
    enc.add_argument("--prefix", default=None, help="Name images '<prefix> <n>' instead of their file names")
    enc.add_argument("--tags", default=None, help="Comma separated tags")
    enc.add_argument("--key", "-k", default=None, help="Encryption key (prompted when omitted)")
    enc.add_argument("--report", action="store_true", help="Write a JSON report")
    enc.set_defaults(func=cmd_encrypt)

    dec = sub.add_parser("decrypt", help="Decrypt the vault into a directory")
    dec.add_argument("--output", "-o", default="decrypted", help="Output directory")
    dec.add_argument("--album", "-a", default=None, help="Only this album")
    dec.add_argument("--key", "-k", default=None, help="Decryption key (prompted when omitted)")
    dec.set_defaults(func=cmd_decrypt)

    mig = sub.add_parser("migrate", help="Convert old .enc + .json pairs to single-file containers")
    mig.set_defaults(func=cmd_migrate)

    ins = sub.add_parser("inspect", help="Print container metadata, no key needed")
    ins.add_argument("image_id", nargs="?", default=None)
    ins.set_defaults(func=cmd_inspect)

    srv = sub.add_parser("serve", help="Run the HTTP server")
    srv.add_argument("--host", default="127.0.0.1")
    srv.add_argument("--port", type=int, default=8000)
    srv.set_defaults(func=cmd_serve)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else settings.log_level,
        format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )
    storage = VaultStorage(args.vault)
    try:
        return args.func(args, storage)
    except APIException as e:
        log.error(e.detail)
        return 1
    except KeyboardInterrupt:
        log.info("Interrupted")
        return 130
    finally:
        storage.close()


if __name__ == "__main__":
    sys.exit(main())

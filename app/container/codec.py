"""
    Single-file container format for encrypted images.

    Layout, no padding between fields:

        [4-byte big-endian metadata length][metadata JSON][16-byte IV][ciphertext]

    The payload is AES-256-CBC with PKCS#7 padding. The key is the SHA-256
    digest of the passphrase; it is recomputed on every call and never stored.
"""
import json
import os
import struct
import logging
from typing import Any, BinaryIO, Callable, Dict, Tuple, Union

from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from app.container.errors import InvalidKey, MalformedContainer

log = logging.getLogger(__name__)

LENGTH_PREFIX = struct.Struct(">I")
IV_SIZE = 16
BLOCK_BITS = algorithms.AES.block_size

Passphrase = Union[bytes, str]
Metadata = Dict[str, Any]


def _passphrase_bytes(passphrase: Passphrase) -> bytes:
    if isinstance(passphrase, str):
        return passphrase.encode("utf-8")
    return bytes(passphrase)


def derive_key(passphrase: Passphrase) -> bytes:
    """Key = SHA-256(passphrase). Unsalted, single pass.

    Kept as-is so containers written by earlier versions stay readable;
    changing it is a format break.
    """
    digest = hashes.Hash(hashes.SHA256(), backend=default_backend())
    digest.update(_passphrase_bytes(passphrase))
    return digest.finalize()


def _encrypt(key: bytes, iv: bytes, plaintext: bytes) -> bytes:
    padder = padding.PKCS7(BLOCK_BITS).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv), backend=default_backend()).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def _decrypt(key: bytes, iv: bytes, ciphertext: bytes) -> bytes:
    try:
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv), backend=default_backend()).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(BLOCK_BITS).unpadder()
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        # wrong key and corrupt data look the same from here
        log.debug("Decryption failed: %s", e)
        raise InvalidKey() from None


def serialize_metadata(metadata: Metadata) -> bytes:
    return json.dumps(metadata, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def parse_metadata(block: bytes) -> Metadata:
    """Parse a metadata block, defaulting ``tags`` for legacy containers."""
    try:
        metadata = json.loads(block.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedContainer(f"Metadata block is not valid JSON: {e}") from None
    if not isinstance(metadata, dict):
        raise MalformedContainer("Metadata block is not a JSON object")
    if metadata.get("tags") is None:
        metadata["tags"] = []
    return metadata


def frame(metadata: Metadata, iv: bytes, ciphertext: bytes) -> bytes:
    """Assemble a container from an already encrypted payload."""
    if len(iv) != IV_SIZE:
        raise MalformedContainer(f"IV must be {IV_SIZE} bytes, got {len(iv)}")
    block = serialize_metadata(metadata)
    return LENGTH_PREFIX.pack(len(block)) + block + iv + ciphertext


def _metadata_span(container: bytes) -> Tuple[int, int]:
    if len(container) < LENGTH_PREFIX.size:
        raise MalformedContainer("Container is shorter than its length prefix")
    (length,) = LENGTH_PREFIX.unpack_from(container, 0)
    start = LENGTH_PREFIX.size
    if length > len(container) - start:
        raise MalformedContainer(
            f"Declared metadata length {length} exceeds the {len(container) - start} bytes available"
        )
    return start, start + length


def split(container: bytes) -> Tuple[Metadata, bytes, bytes]:
    """Split a container into (metadata, iv, ciphertext) without decrypting."""
    start, end = _metadata_span(container)
    metadata = parse_metadata(container[start:end])
    if len(container) - end < IV_SIZE:
        raise MalformedContainer("Container is truncated inside the IV")
    iv = container[end:end + IV_SIZE]
    ciphertext = container[end + IV_SIZE:]
    return metadata, iv, ciphertext


def encode(plaintext: bytes, passphrase: Passphrase, metadata: Metadata) -> bytes:
    """Encrypt ``plaintext`` under a fresh random IV and frame it with ``metadata``."""
    key = derive_key(passphrase)
    iv = os.urandom(IV_SIZE)
    ciphertext = _encrypt(key, iv, plaintext)
    return frame(metadata, iv, ciphertext)


def decode(container: bytes, passphrase: Passphrase) -> Tuple[bytes, Metadata]:
    """Return (plaintext, metadata).

    Raises MalformedContainer for structural defects and InvalidKey when the
    payload does not decrypt.
    """
    metadata, iv, ciphertext = split(container)
    plaintext = _decrypt(derive_key(passphrase), iv, ciphertext)
    return plaintext, metadata


def peek_metadata(container: bytes) -> Metadata:
    """Read the metadata block only. No passphrase needed."""
    start, end = _metadata_span(container)
    return parse_metadata(container[start:end])


def read_metadata_from_file(fileobj: BinaryIO) -> Metadata:
    """Like peek_metadata, but reads just the header from an open file."""
    prefix = fileobj.read(LENGTH_PREFIX.size)
    if len(prefix) < LENGTH_PREFIX.size:
        raise MalformedContainer("Container is shorter than its length prefix")
    (length,) = LENGTH_PREFIX.unpack(prefix)
    block = fileobj.read(length)
    if len(block) < length:
        raise MalformedContainer(
            f"Declared metadata length {length} exceeds the {len(block)} bytes available"
        )
    return parse_metadata(block)


def rewrite_metadata(
    container: bytes,
    passphrase: Passphrase,
    mutator: Callable[[Metadata], Metadata],
) -> bytes:
    """Decrypt, let ``mutator`` produce new metadata, re-encrypt under a new IV.

    Decrypting first means a wrong passphrase cannot change metadata.
    """
    plaintext, metadata = decode(container, passphrase)
    updated = mutator(metadata)
    return encode(plaintext, passphrase, updated)

import io
import pytest
from PIL import Image

from app.container import codec
from app.image_service import service
from app.exceptions import (
    AlbumNotFoundException, CorruptContainerException, ImageNotFoundException,
    InvalidImageException, InvalidKeyException, InvalidRequestException, StorageException,
)


def make_png_bytes(size=(10, 10)):
    """Generate a simple valid PNG in-memory."""
    img = Image.new("RGB", size, color="red")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def save(storage, name="a.png", key="secret", tags=None, album=None, contents=None):
    meta, _ = service.save_image(
        storage=storage,
        contents=contents or make_png_bytes(),
        filename=name,
        content_type="image/png",
        key=key,
        tags=tags,
        album=album,
    )
    return meta


def put_fixed_iv(storage, mocker, image_id="abc"):
    """Container whose ciphertext does not unpad under the key "wrong"."""
    mocker.patch("app.container.codec.os.urandom", return_value=bytes(range(16)))
    container = codec.encode(b"\x01\x02\x03", "test123", {"id": image_id, "tags": []})
    mocker.stopall()
    return storage.write(image_id, container)


# ------------------------------
# validate_image_bytes
# ------------------------------

def test_validate_png_bytes_ok():
    data = make_png_bytes()
    result = service.validate_image_bytes(data, "image/png")
    assert result == "image/png"


def test_validate_invalid_bytes_raises():
    with pytest.raises(InvalidImageException):
        service.validate_image_bytes(b"notanimage", "image/png")


def test_validate_svg_rejected():
    svg_data = b'<svg xmlns="http://www.w3.org/2000/svg"></svg>'
    with pytest.raises(InvalidImageException):
        service.validate_image_bytes(svg_data, "image/svg+xml")


def test_validate_heic_accepted_by_type():
    assert service.validate_image_bytes(b"....ftypheic", "image/heic") == "image/heic"


def test_validate_unsupported_type():
    with pytest.raises(InvalidImageException):
        service.validate_image_bytes(b"fake", "application/pdf")


# ------------------------------
# keys and tags
# ------------------------------

def test_check_key_length():
    assert service.check_key("abcd") == "abcd"
    with pytest.raises(InvalidRequestException):
        service.check_key("abc")
    with pytest.raises(InvalidRequestException):
        service.check_key(None)


def test_normalize_tags():
    assert service.normalize_tags([" Beach", "beach", "", "Sunset ", "  "]) == ["beach", "sunset"]
    with pytest.raises(InvalidRequestException):
        service.normalize_tags(["ok", 3])


def test_lone_surrogates_rejected(storage):
    with pytest.raises(InvalidRequestException):
        service.normalize_tags(["\ud800"])
    with pytest.raises(InvalidRequestException):
        service.check_key("abcd\udfff")
    with pytest.raises(InvalidRequestException):
        save(storage, name="bad\ud800.png")
    assert service.fetch_images(storage)["total"] == 0


def test_parse_tags_field():
    assert service.parse_tags_field(None) == []
    assert service.parse_tags_field('["A", "b"]') == ["a", "b"]
    assert service.parse_tags_field("a, B ,c") == ["a", "b", "c"]
    with pytest.raises(InvalidRequestException):
        service.parse_tags_field("[broken")


# ------------------------------
# save_image
# ------------------------------

def test_save_image_writes_container(storage):
    contents = make_png_bytes()
    meta, location = service.save_image(
        storage=storage,
        contents=contents,
        filename="test.png",
        content_type="image/png",
        key="secret",
        name="Holiday",
        tags=["Sea"],
    )
    assert location.path.name == f"{meta.id}.enc"
    plaintext, metadata = codec.decode(location.path.read_bytes(), "secret")
    assert plaintext == contents
    assert metadata["originalName"] == "Holiday"
    assert metadata["mimeType"] == "image/png"
    assert metadata["size"] == len(contents)
    assert metadata["tags"] == ["sea"]
    assert metadata["encryptedAt"] == metadata["uploadDate"]
    assert "updatedAt" not in metadata


def test_save_image_into_album(storage):
    meta = save(storage, album="trips")
    assert storage.locate(meta.id).album == "trips"


def test_save_image_bad_album(storage):
    with pytest.raises(InvalidRequestException):
        save(storage, album="../up")


def test_save_image_short_key(storage):
    with pytest.raises(InvalidRequestException):
        save(storage, key="abc")


def test_save_image_storage_error(mocker):
    mock_storage = mocker.Mock()
    mock_storage.write.side_effect = OSError("read-only")
    with pytest.raises(StorageException):
        save(mock_storage)


# ------------------------------
# fetch_images
# ------------------------------

def test_fetch_images_newest_first(storage, mocker):
    stamps = iter(["2024-01-01T00:00:00.000Z", "2024-03-01T00:00:00.000Z", "2024-02-01T00:00:00.000Z"])
    mocker.patch("app.image_service.service.utc_now_iso", side_effect=lambda: next(stamps))
    first, second, third = save(storage, "1.png"), save(storage, "2.png"), save(storage, "3.png")

    resp = service.fetch_images(storage)
    assert [i.image_id for i in resp["images"]] == [second.id, third.id, first.id]
    assert resp["total"] == 3


def test_fetch_images_filters(storage):
    save(storage, "cat.png", tags=["pets"])
    save(storage, "beach.png", tags=["summer"], album="trips")
    save(storage, "dog.png", tags=["pets", "summer"])

    assert {i.original_name for i in service.fetch_images(storage, tag="PETS")["images"]} == {"cat.png", "dog.png"}
    assert {i.original_name for i in service.fetch_images(storage, q="bea")["images"]} == {"beach.png"}
    assert {i.original_name for i in service.fetch_images(storage, q="summ")["images"]} == {"beach.png", "dog.png"}
    assert [i.album for i in service.fetch_images(storage, album="trips")["images"]] == ["trips"]


def test_fetch_images_pagination(storage):
    for n in range(5):
        save(storage, f"{n}.png")
    resp = service.fetch_images(storage, page=2, limit=2)
    assert len(resp["images"]) == 2
    assert resp["pages"] == 3
    assert resp["page"] == 2
    assert service.fetch_images(storage, page=4, limit=2)["images"] == []


def test_fetch_images_empty_vault(storage):
    resp = service.fetch_images(storage)
    assert resp == {"images": [], "total": 0, "page": 1, "pages": 1}


def test_fetch_images_unknown_album(storage):
    with pytest.raises(AlbumNotFoundException):
        service.fetch_images(storage, album="nope")


# ------------------------------
# get_image_meta / decrypt_image
# ------------------------------

def test_get_image_meta(storage):
    meta = save(storage, tags=["x"])
    entry = service.get_image_meta(storage, meta.id)
    assert entry["metadata"]["tags"] == ["x"]
    assert entry["album"] == "default"


def test_get_image_meta_not_found(storage):
    with pytest.raises(ImageNotFoundException):
        service.get_image_meta(storage, "nope")


def test_get_image_meta_corrupt(storage, vault_dir):
    (vault_dir / "junk.enc").write_bytes(b"\x01")
    with pytest.raises(CorruptContainerException):
        service.get_image_meta(storage, "junk")


def test_decrypt_image(storage):
    contents = make_png_bytes()
    meta = save(storage, contents=contents, album="a1")
    plaintext, metadata, album = service.decrypt_image(storage, meta.id, "secret")
    assert plaintext == contents
    assert metadata["id"] == meta.id
    assert album == "a1"


def test_decrypt_image_wrong_key(storage, mocker):
    put_fixed_iv(storage, mocker)
    with pytest.raises(InvalidKeyException):
        service.decrypt_image(storage, "abc", "wrong")


def test_decrypt_image_not_found(storage):
    with pytest.raises(ImageNotFoundException):
        service.decrypt_image(storage, "missing", "secret")


# ------------------------------
# thumbnails and data urls
# ------------------------------

def test_to_data_url():
    assert service.to_data_url("image/png", b"\x00\x01") == "data:image/png;base64,AAE="
    assert service.to_data_url(None, b"").startswith("data:image/jpeg;base64,")


def test_make_thumbnail_downscales():
    thumb, mime = service.make_thumbnail(make_png_bytes(size=(800, 400)), "image/png", size=100)
    img = Image.open(io.BytesIO(thumb))
    assert mime == "image/jpeg"
    assert max(img.size) == 100


def test_make_thumbnail_passthrough_for_unknown_format():
    assert service.make_thumbnail(b"heic-bytes", "image/heic") == (b"heic-bytes", "image/heic")


def test_make_thumbnail_passthrough_for_oversized_image(mocker):
    mocker.patch(
        "app.image_service.service.Image.open",
        side_effect=Image.DecompressionBombError("too many pixels"),
    )
    assert service.make_thumbnail(b"huge", "image/png") == (b"huge", "image/png")


# ------------------------------
# update_tags
# ------------------------------

def test_update_tags(storage):
    contents = make_png_bytes()
    meta = save(storage, contents=contents, tags=["old"])
    before = storage.read(meta.id)

    updated = service.update_tags(storage, meta.id, "secret", ["New", "new", "Other"])

    assert updated["tags"] == ["new", "other"]
    assert "updatedAt" in updated
    after = storage.read(meta.id)
    plaintext, metadata = codec.decode(after, "secret")
    assert plaintext == contents
    assert metadata["id"] == meta.id
    assert metadata["tags"] == ["new", "other"]
    assert codec.split(after)[1] != codec.split(before)[1]


def test_update_tags_wrong_key_leaves_file(storage, mocker):
    put_fixed_iv(storage, mocker)
    before = storage.read("abc")
    with pytest.raises(InvalidKeyException):
        service.update_tags(storage, "abc", "wrong", ["x"])
    assert storage.read("abc") == before


def test_update_tags_rejects_lone_surrogate(storage):
    meta = save(storage, tags=["keep"])
    before = storage.read(meta.id)
    with pytest.raises(InvalidRequestException):
        service.update_tags(storage, meta.id, "secret", ["\ud800"])
    assert storage.read(meta.id) == before


def test_update_tags_not_found(storage):
    with pytest.raises(ImageNotFoundException):
        service.update_tags(storage, "missing", "secret", [])


# ------------------------------
# remove_image
# ------------------------------

def test_remove_image_success(storage):
    meta = save(storage)
    assert service.remove_image(storage, meta.id) is True
    with pytest.raises(ImageNotFoundException):
        service.get_image_meta(storage, meta.id)


def test_remove_image_not_found(storage):
    with pytest.raises(ImageNotFoundException):
        service.remove_image(storage, "doesnotexist")

import io
import os
import pytest
from fastapi.testclient import TestClient
from PIL import Image

# Set test environment variable BEFORE importing app modules
os.environ["TESTING"] = "true"
os.environ["LOG_LEVEL"] = "DEBUG"

from app.main import app
from app.settings import settings
from app.storage.vault import VaultStorage


def make_png_bytes(color="red", size=(10, 10)):
    """Generate a simple valid PNG in-memory."""
    img = Image.new("RGB", size, color=color)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture(scope="function")
def vault_dir(tmp_path, monkeypatch):
    """Point the settings at a throwaway vault directory."""
    path = tmp_path / "encrypted"
    monkeypatch.setattr(settings, "vault_dir", str(path))
    return path


@pytest.fixture(scope="function")
def storage(vault_dir):
    return VaultStorage(str(vault_dir))


@pytest.fixture(scope="function")
def test_client(vault_dir):
    # lifespan opens the vault from settings.vault_dir
    with TestClient(app) as client:
        yield client


@pytest.fixture
def png_bytes():
    return make_png_bytes()

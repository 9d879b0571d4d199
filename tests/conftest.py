"""
Test configuration and shared fixtures for the memedex test suite.
"""

from pathlib import Path
from typing import Callable

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from memedex.api import create_app
from memedex.config import Settings
from memedex.storage import ItemStore

from tests.mocks import MockDescriptionClient, MockEmbeddingModel


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings pointing every path into a temporary directory."""
    return Settings(
        database_path=tmp_path / "memedex.db",
        upload_dir=tmp_path / "uploads",
        scan_directory=tmp_path / "memes",
        ollama_url="http://ollama.test:11434",
        warm_up_embedding=False,
        log_level="DEBUG",
        _env_file=None,
    )


@pytest.fixture
def store(test_settings: Settings) -> ItemStore:
    return ItemStore(test_settings)


@pytest.fixture
def embedder(test_settings: Settings) -> MockEmbeddingModel:
    return MockEmbeddingModel(test_settings)


@pytest.fixture
def describer() -> MockDescriptionClient:
    return MockDescriptionClient()


@pytest.fixture
def make_image(tmp_path: Path) -> Callable[..., Path]:
    """Factory writing a small image file and returning its path."""

    def _make(relative: str, size=(32, 24), color="red") -> Path:
        path = tmp_path / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        image_format = "JPEG" if path.suffix.lower() in (".jpg", ".jpeg") else None
        Image.new("RGB", size, color=color).save(path, format=image_format)
        return path

    return _make


@pytest.fixture
def client(
    test_settings: Settings,
    store: ItemStore,
    embedder: MockEmbeddingModel,
    describer: MockDescriptionClient,
) -> TestClient:
    """TestClient for an app wired to the test store and mock clients."""
    app = create_app(test_settings, store=store, embedder=embedder, describer=describer)
    return TestClient(app)

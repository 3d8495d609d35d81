import io
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from stego_api.config import Settings
from stego_api.jobs import JobRegistry
from stego_api.main import create_app
from stego_api.storage import ArtifactStore
from stego_api.worker import JobExecutor

FAKE_ENGINE = Path(__file__).with_name("fake_engine.py")


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        engine_path=sys.executable,
        engine_args=[str(FAKE_ENGINE)],
        staging_dir=tmp_path / "staging",
        output_dir=tmp_path / "output",
        job_timeout_sec=10,
    )


@pytest.fixture
def client(settings: Settings):
    with TestClient(create_app(settings)) as c:
        yield c


@pytest.fixture
def store(settings: Settings) -> ArtifactStore:
    s = ArtifactStore(settings.staging_dir, settings.output_dir)
    s.ensure_directories()
    return s


@pytest.fixture
def registry() -> JobRegistry:
    return JobRegistry()


@pytest.fixture
def executor(settings: Settings, store: ArtifactStore, registry: JobRegistry) -> JobExecutor:
    return JobExecutor(
        settings.engine_path,
        store,
        registry,
        engine_args=settings.engine_args,
        timeout_sec=settings.job_timeout_sec,
    )


@pytest.fixture
def png_bytes() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), (200, 10, 10)).save(buf, format="PNG")
    return buf.getvalue()

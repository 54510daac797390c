"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for atlas_mock and mongo_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from atlas_mock import MockAtlasAPI  # noqa: E402
from mongo_mock import MockMongoServer  # noqa: E402

from matlas.client import AtlasClient  # noqa: E402
from matlas.config import Config, RetryConfig  # noqa: E402
from matlas.services.registry import AtlasServices  # noqa: E402


@pytest.fixture
def api() -> MockAtlasAPI:
    """Empty in-memory admin API."""
    return MockAtlasAPI()


@pytest.fixture
def mongo() -> MockMongoServer:
    """Empty in-memory data plane."""
    return MockMongoServer()


@pytest.fixture
def config() -> Config:
    """Configuration with credentials and no retry backoff."""
    return Config(
        public_key="pub",
        private_key="priv",
        credentials_source="explicit",
        org_id="5f0000000000000000000001",
        retry=RetryConfig(max_attempts=3, backoff_ms=0),
        temp_user_propagation_seconds=0,
    )


@pytest.fixture
def services(api: MockAtlasAPI) -> AtlasServices:
    """Resource services bound to the mock API."""
    return AtlasServices.from_client(AtlasClient(api, RetryConfig(max_attempts=3, backoff_ms=0)))


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep real credentials and config files out of every test."""
    for key in (
        "API_PUB_KEY",
        "API_PRIV_KEY",
        "PROJECT_ID",
        "ORG_ID",
        "CONFIG_FILE",
        "MONGODB_URI",
        "MONGODB_USERNAME",
        "MONGODB_PASSWORD",
        "MATLAS_LOG_FORMAT",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("MATLAS_CREDENTIALS_FILE", str(tmp_path / "no-credentials"))
    monkeypatch.setenv("HOME", str(tmp_path))

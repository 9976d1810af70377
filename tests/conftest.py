from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from modelrouter.config import AppSettings
from modelrouter.main import create_app
from tests.fakes import FakeInferenceClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        ollama_base_url="http://ollama.test",
        retry_backoff_s=0.0,
        database_path=str(tmp_path / "test.db"),
        upload_dir=str(tmp_path / "uploads"),
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(*, fake_client: FakeInferenceClient | None = None, **settings_overrides):
        settings = make_settings(tmp_path, **settings_overrides)
        client = fake_client or FakeInferenceClient()
        app = create_app(settings, client=client)
        return app, client

    return _factory


@pytest.fixture
async def client(app_factory):
    app, fake_client = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.fake_client = fake_client  # type: ignore[attr-defined]
            yield http_client

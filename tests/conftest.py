from pathlib import Path
from typing import Dict, List

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from research_router.main import create_app
from research_router.schemas import ModelConfig
from tests.fakes import FakeAdapter, FakeSourceProvider, make_router, make_settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_adapter: FakeAdapter | None = None,
        fake_sources: FakeSourceProvider | None = None,
        models: List[ModelConfig] | None = None,
        api_keys: Dict[str, str] | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(**settings_overrides)
        adapter = fake_adapter or FakeAdapter()
        sources = fake_sources or FakeSourceProvider()
        llm_router = make_router(adapter, models=models, api_keys=api_keys)
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(settings, llm_router=llm_router, source_provider=sources, config_path=cfg_path)
        return app, cfg_path, adapter, sources

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, adapter, sources = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_adapter = adapter  # type: ignore[attr-defined]
            http_client.fake_sources = sources  # type: ignore[attr-defined]
            yield http_client

import pytest

from app.services.dispatcher import ProviderDispatcher
from app.services.engine import AIEngine
from app.services.media import MediaPreprocessor
from app.services.model_resolver import ModelResolver
from app.services.response_cache import ResponseCache
from app.services.tool_loop import ToolCallLoop
from app.config import Settings
from tests.fakes import (
    CountingKeyPool,
    FakeCatalog,
    FakeClock,
    FakeInference,
    FakePageStore,
    make_settings,
    managed_page,
)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def key_pool(settings, clock) -> CountingKeyPool:
    return CountingKeyPool(settings, clock=clock)


@pytest.fixture
def inference() -> FakeInference:
    return FakeInference()


@pytest.fixture
def catalog() -> FakeCatalog:
    return FakeCatalog()


@pytest.fixture
def resolver(inference, key_pool, settings) -> ModelResolver:
    return ModelResolver(inference, key_pool, settings)


@pytest.fixture
def dispatcher(inference, key_pool, resolver, catalog, settings) -> ProviderDispatcher:
    # Deterministic key order
    return ProviderDispatcher(
        inference, key_pool, resolver, ToolCallLoop(catalog), settings, shuffle=lambda keys: None
    )


@pytest.fixture
def media(inference, key_pool, resolver, settings) -> MediaPreprocessor:
    return MediaPreprocessor(inference, key_pool, resolver, settings)


@pytest.fixture
def page_store() -> FakePageStore:
    return FakePageStore({"page-1": managed_page()})


@pytest.fixture
def engine(dispatcher, media, catalog, page_store, settings) -> AIEngine:
    return AIEngine(
        dispatcher=dispatcher,
        media=media,
        catalog=catalog,
        cache=ResponseCache(),
        page_store=page_store,
        settings=settings,
    )

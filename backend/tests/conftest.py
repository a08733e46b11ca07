import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from typing import Generator

import pytest
from hypothesis import settings

from knowledge_engine.core.config import get_settings
from knowledge_engine.retrieval.index_manager import IndexCacheManager

from fakes import FakeClock, StaticCorpusProvider, spanish_faq_corpus

# jieba lazily loads its dictionary on first use, which can blow the default
# per-example deadline; disable it so property tests aren't timing-flaky.
settings.register_profile("default_no_deadline", deadline=None)
settings.load_profile("default_no_deadline")


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    for name in ("OPENAI_API_KEY", "REDIS_URL", "SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def corpus_provider() -> StaticCorpusProvider:
    return StaticCorpusProvider({"tenant-a": spanish_faq_corpus()})


@pytest.fixture
def index_manager(corpus_provider: StaticCorpusProvider, clock: FakeClock) -> Generator[IndexCacheManager, None, None]:
    manager = IndexCacheManager(
        corpus_provider,
        ttl_seconds=60,
        sweep_interval_seconds=0.05,
        clock=clock,
    )
    yield manager
    manager.shutdown()

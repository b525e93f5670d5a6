import pytest

from pagerops.db import init_db, make_engine
from pagerops.store import EntityStore

from .fixtures import FakeClock, MemoryDraftRepository, TimerFactory


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(tmp_path / "pager-ops.db")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store():
    return EntityStore()


@pytest.fixture
def draft_repo():
    return MemoryDraftRepository()


@pytest.fixture
def timers():
    return TimerFactory()


@pytest.fixture
def clock():
    return FakeClock()

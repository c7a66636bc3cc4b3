import pytest

from db import get_engine
from forum_store import bootstrap_sqlite, create_user, get_profile
from statafix_engine import IssueDraft


@pytest.fixture
def engine(tmp_path):
    eng = get_engine(f"sqlite:///{tmp_path / 'forum.db'}")
    bootstrap_sqlite(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def alice(engine):
    return create_user(engine, "alice", "secret123", "alice@example.com")


@pytest.fixture
def bob(engine):
    return create_user(engine, "bob", "hunter22")


@pytest.fixture
def draft():
    return IssueDraft(
        title="merge fails on key",
        command="merge 1:1 id using other.dta",
        error_category="Data Error",
        description="variable id does not uniquely identify observations in the master data",
    )


@pytest.fixture
def points(engine):
    def _points(user):
        return get_profile(engine, user["id"])["cumulative_points"]
    return _points

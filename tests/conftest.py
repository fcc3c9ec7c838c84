import datetime as dt
import os
import sys

import pytest

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import tickr  # noqa: E402


class FakeClock:
    """Stand-in for ``tickr._now`` that only moves when told to."""

    def __init__(self, start: dt.datetime):
        self.current = start

    def __call__(self) -> dt.datetime:
        return self.current

    def advance(self, **kwargs) -> dt.datetime:
        self.current = self.current + dt.timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock(monkeypatch):
    """Freeze the clock at local noon on 2024-05-15."""
    fake = FakeClock(dt.datetime(2024, 5, 15, 12, 0, 0).astimezone())
    monkeypatch.setattr(tickr, '_now', fake)
    return fake


@pytest.fixture
def db():
    store = tickr.TickrDB(':memory:')
    try:
        yield store
    finally:
        store.close()


@pytest.fixture
def temp_db_path(tmp_path):
    """Return a unique SQLite path per test to avoid cross-test contamination."""
    return tmp_path / "tickr.db"


@pytest.fixture
def seeded(db, clock):
    """Two projects with a few tasks; nothing running."""
    alpha = db.create_project("Alpha")
    beta = db.create_project("beta")
    design = db.create_category("Design", "#FF5733")
    t1 = db.create_task(alpha.id, "Write report", design.id)
    t2 = db.create_task(alpha.id, "Review PR")
    t3 = db.create_task(beta.id, "Plan sprint")
    start = clock() - dt.timedelta(hours=2)
    db.add_interval(t1.id, start, start + dt.timedelta(hours=1))
    return {
        'alpha': alpha, 'beta': beta, 'design': design,
        'write': t1, 'review': t2, 'plan': t3,
    }

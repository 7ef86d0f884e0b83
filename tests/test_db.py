import pytest

from gametrust import db
from gametrust.config import get_settings


class _RecordingSession:
    def __init__(self):
        self.rolled_back = False
        self.closed = False

    def rollback(self):
        self.rolled_back = True

    def close(self):
        self.closed = True


def test_session_scope_rolls_back_failed_job():
    session = _RecordingSession()

    with pytest.raises(RuntimeError):
        with db.session_scope(lambda: session) as scoped:
            assert scoped is session
            raise RuntimeError("gateway down")

    assert session.rolled_back
    assert session.closed


def test_session_scope_closes_after_success():
    session = _RecordingSession()

    with db.session_scope(lambda: session):
        pass

    assert not session.rolled_back
    assert session.closed


def test_engine_options_per_backend():
    settings = get_settings()

    sqlite = db._engine_kwargs("sqlite:///gametrust.db")
    assert sqlite["connect_args"] == {"check_same_thread": False, "timeout": settings.DB_BUSY_TIMEOUT_SECONDS}

    postgres = db._engine_kwargs("postgresql+psycopg://escrow@db/escrow")
    assert postgres == {"pool_pre_ping": True, "pool_recycle": settings.DB_POOL_RECYCLE_SECONDS}

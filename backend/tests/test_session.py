"""Database session tests"""
import pytest
from unittest.mock import patch
from sqlalchemy.pool import StaticPool

from app.core.config import settings
from app.db import session as session_module
from app.db.session import engine_options, get_db


class TestEngineOptions:
    """Test per-backend engine configuration"""

    @pytest.mark.parametrize("url", ["sqlite://", "sqlite:///:memory:"])
    def test_in_memory_sqlite_shares_one_connection(self, url):
        """Test an in-memory database uses a static pool usable across threads"""
        options = engine_options(url)

        assert options["poolclass"] is StaticPool
        assert options["connect_args"] == {"check_same_thread": False}

    def test_file_sqlite_uses_default_pool(self):
        """Test a file database keeps SQLAlchemy's default pooling"""
        options = engine_options("sqlite:///./ledger.db")

        assert "poolclass" not in options
        assert options["connect_args"] == {"check_same_thread": False}

    def test_postgres_pool_and_isolation(self):
        """Test PostgreSQL connections are pooled at READ COMMITTED"""
        options = engine_options("postgresql://ledger:secret@db:5432/campaign_ledger")

        assert options["isolation_level"] == "READ COMMITTED"
        assert options["pool_pre_ping"] is True
        assert options["pool_size"] == settings.DATABASE_POOL_SIZE
        assert options["max_overflow"] == settings.DATABASE_MAX_OVERFLOW


class _RecordingSession:
    def __init__(self):
        self.calls = []

    def rollback(self):
        self.calls.append("rollback")

    def close(self):
        self.calls.append("close")


class TestGetDb:
    """Test the request-scoped session dependency"""

    def test_session_closed_after_request(self):
        """Test a successful request closes its session without rolling back"""
        recorded = _RecordingSession()
        with patch.object(session_module, "SessionLocal", return_value=recorded):
            dependency = get_db()
            assert next(dependency) is recorded
            with pytest.raises(StopIteration):
                next(dependency)

        assert recorded.calls == ["close"]

    def test_failed_request_rolls_back(self):
        """Test an error raised while the session is in use rolls it back first"""
        recorded = _RecordingSession()
        with patch.object(session_module, "SessionLocal", return_value=recorded):
            dependency = get_db()
            next(dependency)
            with pytest.raises(RuntimeError):
                dependency.throw(RuntimeError("request failed"))

        assert recorded.calls == ["rollback", "close"]

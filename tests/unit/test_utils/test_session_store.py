"""Unit tests for SessionStore.

Covers save/load/restore round trips, expiry and the database fallback.
"""

import json
import pytest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

from fmtc_crawler.config import SessionConfig
from fmtc_crawler.database import LocalSqliteDatabase
from fmtc_crawler.models import SessionState
from fmtc_crawler.utils.session_store import SessionStore, sanitize_identity

IDENTITY = "buyer@example.com"
ORIGIN = "https://account.fmtc.co"


def storage_state():
    return {
        "cookies": [
            {"name": "PHPSESSID", "value": "abc123", "domain": "account.fmtc.co", "path": "/"},
            {"name": "remember", "value": "1", "domain": "account.fmtc.co", "path": "/"},
        ],
        "origins": [
            {"origin": ORIGIN, "localStorage": [{"name": "dt_state", "value": "{}"}]},
        ],
    }


def make_page(url="https://account.fmtc.co/cp/dash"):
    page = MagicMock()
    page.url = url
    page.context.storage_state = AsyncMock(return_value=storage_state())
    page.context.add_cookies = AsyncMock()
    page.add_init_script = AsyncMock()
    page.goto = AsyncMock()
    return page


@pytest.fixture
def file_store(tmp_path):
    """Store without a database."""
    return SessionStore(SessionConfig(session_dir=tmp_path, max_age_hours=4))


@pytest.fixture
def db_store(tmp_path):
    """Store backed by SQLite."""
    db = LocalSqliteDatabase(tmp_path / "sessions.db")
    yield SessionStore(SessionConfig(session_dir=tmp_path / "files", max_age_hours=4), db)
    db.close()


class TestSessionState:
    """Tests for SessionState."""

    def test_round_trip_dict(self):
        """Persisted record keeps cookies, origins and capture time."""
        state = SessionState(identity=IDENTITY, **storage_state())
        restored = SessionState.from_dict(json.loads(json.dumps(state.to_dict())))

        assert restored.cookies == state.cookies
        assert restored.local_storage_for(ORIGIN) == [{"name": "dt_state", "value": "{}"}]
        assert restored.captured_at == state.captured_at
        assert "capturedAt" in state.to_dict()

    def test_expiry(self):
        """Only states older than the max age are expired."""
        fresh = SessionState(captured_at=datetime.now() - timedelta(hours=1))
        stale = SessionState(captured_at=datetime.now() - timedelta(hours=5))

        assert not fresh.is_expired(4)
        assert stale.is_expired(4)


class TestSessionStore:
    """Tests for file-backed persistence."""

    def test_sanitize_identity(self):
        """Account names become safe file name parts."""
        assert sanitize_identity("a.b@c.com") == "a_b_c_com"

    @pytest.mark.asyncio
    async def test_save_then_load(self, file_store, tmp_path):
        """A saved session loads back for the same account."""
        await file_store.save(make_page(), IDENTITY)

        assert (tmp_path / "fmtc-session-buyer_example_com.json").exists()
        state = file_store.load(IDENTITY)
        assert state is not None
        assert len(state.cookies) == 2
        assert state.identity == IDENTITY

    def test_load_missing(self, file_store):
        """Unknown accounts have no session."""
        assert file_store.load("nobody@example.com") is None
        assert not file_store.has_session("nobody@example.com")

    def test_expired_session_is_deleted_on_load(self, file_store, tmp_path):
        """Expiry is enforced when loading."""
        old = SessionState(
            identity=IDENTITY,
            captured_at=datetime.now() - timedelta(hours=10),
            **storage_state(),
        )
        file_store.persist(old)

        assert file_store.load(IDENTITY) is None
        assert not (tmp_path / "fmtc-session-buyer_example_com.json").exists()

    @pytest.mark.asyncio
    async def test_restore_applies_cookies_and_scoped_storage(self, file_store):
        """Cookies go to the context; localStorage is seeded by an origin-scoped script."""
        await file_store.save(make_page(), IDENTITY)
        state = file_store.load(IDENTITY)
        page = make_page(url="about:blank")

        restored = await file_store.restore(page, state)

        assert restored
        page.context.add_cookies.assert_awaited_once_with(state.cookies)
        script = page.add_init_script.call_args.args[0]
        assert json.dumps(ORIGIN) in script
        assert "window.location.origin !== origin" in script
        assert "dt_state" in script

    @pytest.mark.asyncio
    async def test_check_authentication(self, file_store):
        """The dashboard visit decides whether the session is valid."""
        assert await file_store.check_authentication(make_page(), f"{ORIGIN}/cp/dash")
        assert not await file_store.check_authentication(
            make_page(url=f"{ORIGIN}/cp/login"), f"{ORIGIN}/cp/dash"
        )

    def test_list_and_clear_expired(self, file_store):
        """Maintenance helpers report and remove expired sessions."""
        file_store.persist(SessionState(identity="fresh@example.com", **storage_state()))
        file_store.persist(SessionState(
            identity="old@example.com",
            captured_at=datetime.now() - timedelta(hours=10),
            **storage_state(),
        ))

        listed = {s["identity"]: s for s in file_store.list_sessions()}
        assert listed["old@example.com"]["expired"]
        assert not listed["fresh@example.com"]["expired"]

        assert file_store.clear_expired() == 1
        assert [s["identity"] for s in file_store.list_sessions()] == ["fresh@example.com"]

    def test_delete(self, file_store):
        """Deleting removes the stored session."""
        file_store.persist(SessionState(identity=IDENTITY, **storage_state()))

        assert file_store.delete(IDENTITY)
        assert not file_store.delete(IDENTITY)


class TestDatabaseBackedStore:
    """Tests for the SQLite backend and its file fallback."""

    def test_prefers_database(self, db_store):
        """With a database the record is written there, not to a file."""
        state = SessionState(identity=IDENTITY, **storage_state())

        assert db_store.persist(state) == "database"
        assert not list(db_store.session_dir.glob("*.json"))
        assert db_store.load(IDENTITY).cookies == state.cookies

    def test_falls_back_to_file(self, tmp_path):
        """A failing database write lands in the file store."""
        broken = MagicMock()
        broken.save_session_record.side_effect = RuntimeError("disk full")
        store = SessionStore(SessionConfig(session_dir=tmp_path), broken)

        assert store.persist(SessionState(identity=IDENTITY, **storage_state())) == "file"

    def test_no_fallback_raises(self, tmp_path):
        """Without fallback a database failure propagates."""
        broken = MagicMock()
        broken.save_session_record.side_effect = RuntimeError("disk full")
        store = SessionStore(SessionConfig(session_dir=tmp_path, fallback_to_file=False), broken)

        with pytest.raises(RuntimeError):
            store.persist(SessionState(identity=IDENTITY, **storage_state()))

    def test_most_recent_record_wins(self, db_store):
        """Between database and file, the newer capture is returned."""
        older = SessionState(
            identity=IDENTITY,
            captured_at=datetime.now() - timedelta(hours=2),
            cookies=[{"name": "old", "value": "1"}],
        )
        newer = SessionState(identity=IDENTITY, cookies=[{"name": "new", "value": "2"}])
        db_store.persist(older)
        path = db_store.session_dir / "fmtc-session-buyer_example_com.json"
        path.write_text(json.dumps(newer.to_dict()))

        assert db_store.load(IDENTITY).cookies[0]["name"] == "new"

"""
Session persistence for the portal login.

Saves cookies and per-origin localStorage after a successful login and
restores them on the next run so LOGIN can be skipped. Records are keyed
by account username and stored in SQLite when a database is configured,
with a JSON file per account as fallback.

Usage:
    store = SessionStore(config.session, database=db)
    state = store.load("user@example.com")
    if state:
        await store.restore(page, state)
    ...
    await store.save(page, "user@example.com")

Expiry is checked at load time only. Concurrent jobs for the same
account must be serialized by the caller.
"""
import json
import logging
import re
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from fmtc_crawler.config import SessionConfig
from fmtc_crawler.database import AbstractDatabase
from fmtc_crawler.models import SessionState

logger = logging.getLogger(__name__)

SESSION_FILE_PREFIX = "fmtc-session-"

# Seeds localStorage only on the document whose origin matches
LOCAL_STORAGE_SEED_SCRIPT = """
(() => {
    const origin = %s;
    const entries = %s;
    if (window.location.origin !== origin) return;
    try {
        for (const entry of entries) {
            window.localStorage.setItem(entry.name, entry.value);
        }
    } catch (e) {}
})();
"""


def sanitize_identity(identity: str) -> str:
    """Make an account name safe for use in a file name."""
    return re.sub(r"[^a-zA-Z0-9\-_]", "_", identity)


class SessionStore:
    """
    Stores and restores authenticated browser state per account.

    Features:
    - Durable SQLite record with JSON file fallback
    - Max-age expiry enforced on load
    - Cookie restore through the browser context
    - localStorage re-seeding through origin-scoped init scripts
    """

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        database: Optional[AbstractDatabase] = None,
    ):
        self.config = config or SessionConfig()
        self.database = database if self.config.use_database else None
        self.session_dir = Path(self.config.session_dir)
        self.session_dir.mkdir(parents=True, exist_ok=True)

    def _session_path(self, identity: str) -> Path:
        return self.session_dir / f"{SESSION_FILE_PREFIX}{sanitize_identity(identity)}.json"

    async def capture(self, page, identity: str) -> SessionState:
        """Snapshot cookies and localStorage from the page's context."""
        storage = await page.context.storage_state()
        return SessionState(
            cookies=storage.get("cookies", []),
            origins=storage.get("origins", []),
            identity=identity,
        )

    async def save(self, page, identity: str) -> SessionState:
        """
        Capture and persist the current session.

        Args:
            page: Playwright Page instance, logged in
            identity: Account username

        Returns:
            SessionState that was saved
        """
        state = await self.capture(page, identity)
        self.persist(state)
        return state

    def persist(self, state: SessionState) -> str:
        """Write a state to the durable store, falling back to a file.

        Returns:
            "database" or "file", whichever received the record
        """
        identity = state.identity or "default"
        expires_at = state.captured_at + timedelta(hours=self.config.max_age_hours)

        if self.database is not None:
            try:
                self.database.save_session_record(
                    identity, state.to_dict(), state.captured_at, expires_at
                )
                logger.info(
                    f"Session saved to database for {identity}: {len(state.cookies)} cookies"
                )
                return "database"
            except Exception as e:
                if not self.config.fallback_to_file:
                    raise
                logger.warning(f"Database session save failed, using file: {e}")

        path = self._session_path(identity)
        with open(path, "w") as f:
            json.dump(state.to_dict(), f, indent=2)

        logger.info(
            f"Session saved to {path.name} for {identity}: {len(state.cookies)} cookies, "
            f"{sum(len(o.get('localStorage', [])) for o in state.origins)} localStorage items"
        )
        return "file"

    def _load_from_database(self, identity: str) -> Optional[SessionState]:
        if self.database is None:
            return None
        try:
            row = self.database.load_session_record(identity)
        except Exception as e:
            logger.warning(f"Database session load failed for {identity}: {e}")
            return None
        if row is None:
            return None
        return SessionState.from_dict(row["record"])

    def _load_from_file(self, identity: str) -> Optional[SessionState]:
        path = self._session_path(identity)
        if not path.exists():
            return None
        try:
            with open(path) as f:
                return SessionState.from_dict(json.load(f))
        except (OSError, ValueError, KeyError) as e:
            logger.warning(f"Failed to read session file {path}: {e}")
            return None

    def load(self, identity: str) -> Optional[SessionState]:
        """
        Return the most recent non-expired session for an account.

        Expired records are deleted as they are found.
        """
        candidates = [
            s for s in (self._load_from_database(identity), self._load_from_file(identity))
            if s is not None
        ]
        if not candidates:
            logger.debug(f"No saved session for {identity}")
            return None

        state = max(candidates, key=lambda s: s.captured_at)
        if state.is_expired(self.config.max_age_hours):
            logger.info(f"Saved session for {identity} has expired")
            self.delete(identity)
            return None

        if state.identity is None:
            state.identity = identity
        return state

    async def restore(self, page, state: SessionState) -> bool:
        """
        Re-apply a saved session to a page before navigation.

        Cookies are added to the browser context. localStorage entries are
        installed as init scripts that only act on their own origin.

        Returns:
            True if anything was restored
        """
        if state.cookies:
            await page.context.add_cookies(state.cookies)

        seeded = 0
        for entry in state.origins:
            items = entry.get("localStorage", [])
            if not items:
                continue
            await page.add_init_script(
                LOCAL_STORAGE_SEED_SCRIPT % (json.dumps(entry["origin"]), json.dumps(items))
            )
            seeded += len(items)

        logger.info(
            f"Session restored for {state.identity}: {len(state.cookies)} cookies, "
            f"{seeded} localStorage items"
        )
        return bool(state.cookies) or seeded > 0

    async def check_authentication(self, page, dashboard_url: str, timeout_ms: int = 30000) -> bool:
        """Visit the dashboard and confirm we are not bounced to the login page."""
        try:
            await page.goto(dashboard_url, wait_until="domcontentloaded", timeout=timeout_ms)
        except Exception as e:
            logger.warning(f"Authentication check navigation failed: {e}")
            return False

        authenticated = "login" not in page.url.lower()
        logger.info(f"Authentication check: {'valid' if authenticated else 'not logged in'}")
        return authenticated

    def has_session(self, identity: str) -> bool:
        return self.load(identity) is not None

    def delete(self, identity: str) -> bool:
        """Delete stored sessions for an account from every backend."""
        deleted = False
        if self.database is not None:
            try:
                deleted = self.database.delete_session_record(identity) or deleted
            except Exception as e:
                logger.warning(f"Database session delete failed for {identity}: {e}")

        path = self._session_path(identity)
        if path.exists():
            path.unlink()
            deleted = True

        if deleted:
            logger.info(f"Session deleted for {identity}")
        return deleted

    def list_sessions(self) -> List[Dict[str, Any]]:
        """List stored file sessions with their status."""
        sessions = []
        for path in sorted(self.session_dir.glob(f"{SESSION_FILE_PREFIX}*.json")):
            try:
                with open(path) as f:
                    state = SessionState.from_dict(json.load(f))
            except (OSError, ValueError, KeyError) as e:
                logger.warning(f"Failed to read session {path}: {e}")
                continue
            sessions.append({
                "identity": state.identity or path.stem[len(SESSION_FILE_PREFIX):],
                "source": "file",
                "captured_at": state.captured_at.isoformat(),
                "expired": state.is_expired(self.config.max_age_hours),
                "cookie_count": len(state.cookies),
            })

        if self.database is not None:
            for row in self.database.list_session_records():
                sessions.append({
                    "identity": row["identity"],
                    "source": "database",
                    "captured_at": row["captured_at"],
                    "expires_at": row["expires_at"],
                })
        return sessions

    def clear_expired(self) -> int:
        """Delete expired file sessions. Returns count of deleted sessions."""
        deleted = 0
        for path in self.session_dir.glob(f"{SESSION_FILE_PREFIX}*.json"):
            try:
                with open(path) as f:
                    state = SessionState.from_dict(json.load(f))
            except (OSError, ValueError, KeyError) as e:
                logger.warning(f"Failed to check session {path}: {e}")
                continue
            if state.is_expired(self.config.max_age_hours):
                path.unlink()
                deleted += 1

        if deleted > 0:
            logger.info(f"Cleared {deleted} expired sessions")
        return deleted

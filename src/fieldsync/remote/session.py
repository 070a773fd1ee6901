"""
Remote session persistence.

The setup wizard signs in once and the token response is saved as JSON:

    {
        "access_token": "...",
        "refresh_token": "...",
        "user": {"id": "<uuid>", "email": "tech@example.com", ...}
    }

The sync engine only asks "who is signed in?" via get_current_user(); a
missing or unreadable session means "not authenticated", which is not an
error worth retrying. Signing out clears the file.
"""
import json
import logging
import os
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

SESSION_DIR_DEFAULT = Path.home() / ".fieldsync" / "session"
SESSION_FILE_NAME = "session.json"


# ── Exceptions ────────────────────────────────────────────────────────────────

class NoSessionError(RuntimeError):
    """Raised when no saved session exists."""


@dataclass(frozen=True)
class CurrentUser:
    id: str
    email: str = ""


# ── Main class ────────────────────────────────────────────────────────────────

class SessionStore:
    """
    Manages the signed-in session on disk.

    Usage:
        session = SessionStore()
        session.save(token_response)
        user = session.get_current_user()   # → CurrentUser or None
    """

    def __init__(self, session_dir: Path = SESSION_DIR_DEFAULT):
        self._session_dir = Path(session_dir)
        self._session_file = self._session_dir / SESSION_FILE_NAME

    # ── Persistence ───────────────────────────────────────────────────────────

    def has_session(self) -> bool:
        """Return True if a session file exists on disk."""
        return self._session_file.exists()

    def save(self, session_data: Dict[str, Any]) -> None:
        """
        Persist session_data to disk with owner-only permissions.

        Directory: 0700 (rwx------)
        File:      0600 (rw-------)
        """
        self._session_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self._session_dir, stat.S_IRWXU)

        self._session_file.write_text(json.dumps(session_data, indent=2))
        os.chmod(self._session_file, stat.S_IRUSR | stat.S_IWUSR)

    def load(self) -> Dict[str, Any]:
        """
        Load session_data from disk.

        Raises:
            NoSessionError: if no session file exists.
        """
        if not self._session_file.exists():
            raise NoSessionError(
                f"No session found at {self._session_file}. "
                "Run `python -m fieldsync setup` to sign in."
            )
        return json.loads(self._session_file.read_text())

    def clear(self) -> None:
        """Delete the session file (does not raise if already absent)."""
        if self._session_file.exists():
            self._session_file.unlink()

    # ── Queries ───────────────────────────────────────────────────────────────

    def get_current_user(self) -> Optional[CurrentUser]:
        """The signed-in user, or None if there is no usable session."""
        try:
            data = self.load()
        except NoSessionError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Session file unreadable: %s", exc)
            return None

        user = data.get("user") or {}
        if not user.get("id") or not data.get("access_token"):
            return None
        return CurrentUser(id=str(user["id"]), email=user.get("email") or "")

    def access_token(self) -> Optional[str]:
        try:
            return self.load().get("access_token")
        except (NoSessionError, OSError, ValueError):
            return None

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .errors import MalformedSpec, SpecNotFound
from .models import (
    ExecutionSession,
    IterationCap,
    SessionStatus,
    StopReason,
    cap_to_record,
)
from .spec_store import spec_file_hash
from .utils import append_timestamped, atomic_write_text, format_duration, locked_file, read_text

logger = logging.getLogger(__name__)

SESSION_FILENAME = "session.json"
PROGRESS_FILENAME = "progress.log"


class ExecutionStateStore:
    """Durable, resumable session bookkeeping under a state directory.

    The store owns the in-process session: every mutation is applied to that
    single copy and then checkpointed to ``session.json`` with an atomic
    write under an exclusive ``fcntl`` lock. Each mutation also appends a
    line to ``progress.log``, a human-readable audit trail that is only ever
    truncated by ``clear``.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.session_path = root / SESSION_FILENAME
        self.progress_path = root / PROGRESS_FILENAME
        self._session: ExecutionSession | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(
        self,
        max_iterations: IterationCap,
        spec_path: Path,
        *,
        spec_hash: str | None = None,
    ) -> ExecutionSession:
        """Start a fresh session for the spec at *spec_path* and persist it.

        Raises:
            SpecNotFound: If *spec_path* does not exist.
        """
        if not spec_path.is_file():
            raise SpecNotFound(f"Spec not found at {spec_path}. Cannot initialize session.")

        session = ExecutionSession(
            session_id=uuid.uuid4().hex,
            max_iterations=cap_to_record(max_iterations),
            spec_path=str(spec_path),
            spec_hash=spec_hash,
        )
        self.save(session)
        self._log_progress(
            f"Session started: {session.session_id}",
            f"Spec: {spec_path}",
            f"Max iterations: {max_iterations}",
        )
        logger.info("Initialized session %s for %s", session.session_id, spec_path)
        return session

    def load(self) -> ExecutionSession | None:
        """Load the persisted session; missing or corrupt records yield ``None``."""
        if not self.session_path.is_file():
            self._session = None
            return None
        try:
            with locked_file(self.session_path):
                text = read_text(self.session_path, "session record")
            session = ExecutionSession.model_validate_json(text)
        except (OSError, ValueError, ValidationError) as exc:
            logger.warning("Ignoring unreadable session record at %s: %s", self.session_path, exc)
            self._session = None
            return None
        self._session = session
        return session

    def save(self, session: ExecutionSession) -> None:
        self._session = session
        with locked_file(self.session_path):
            atomic_write_text(self.session_path, session.to_json() + "\n")

    def clear(self) -> None:
        """Delete the session record and the progress log."""
        for path in (self.session_path, self.progress_path):
            path.unlink(missing_ok=True)
        self._session = None
        logger.info("Cleared session state under %s", self.root)

    # ------------------------------------------------------------------
    # Mutations (read-modify-write, then checkpoint)
    # ------------------------------------------------------------------

    def current(self) -> ExecutionSession | None:
        """The owned session, loading it from disk on first access."""
        if self._session is None:
            return self.load()
        return self._session

    def update(self, **changes: Any) -> ExecutionSession | None:
        session = self.current()
        if session is None:
            return None
        for name, value in changes.items():
            if name not in ExecutionSession.model_fields:
                raise AttributeError(f"ExecutionSession has no field {name!r}")
            setattr(session, name, value)
        session.touch()
        self.save(session)
        return session

    def mark_item_result(self, item_id: str, success: bool, error: str | None = None) -> ExecutionSession | None:
        """Record one executed item; the iteration counter always advances."""
        session = self.current()
        if session is None:
            return None

        target = session.completed_ids if success else session.failed_ids
        if item_id not in target:
            target.append(item_id)
            self._log_progress(f"{item_id} - PASSED" if success else f"{item_id} - FAILED: {error}")

        session.current_iteration += 1
        session.touch()
        self.save(session)
        return session

    def mark_item_skipped(self, item_id: str, reason: str) -> ExecutionSession | None:
        session = self.current()
        if session is None:
            return None
        if item_id not in session.skipped_ids:
            session.skipped_ids.append(item_id)
            self._log_progress(f"{item_id} - SKIPPED: {reason}")
        session.touch()
        self.save(session)
        return session

    def set_in_progress(self, item_id: str | None) -> ExecutionSession | None:
        return self.update(in_progress_id=item_id)

    def set_status(self, status: SessionStatus, stop_reason: StopReason | None = None) -> ExecutionSession | None:
        session = self.update(status=status, stop_reason=stop_reason)
        if session is not None:
            suffix = f" ({stop_reason.value})" if stop_reason is not None else ""
            self._log_progress(f"Status changed to: {status.value}{suffix}")
        return session

    # ------------------------------------------------------------------
    # Spec integrity checks
    # ------------------------------------------------------------------

    def validate_spec_still_exists(self) -> bool:
        session = self.current()
        if session is None:
            return False
        exists = Path(session.spec_path).is_file()
        if not exists:
            logger.warning("Spec file missing: %s", session.spec_path)
            self._log_progress(f"WARNING: spec file missing: {session.spec_path}")
        return exists

    def has_spec_changed(self) -> bool:
        """Compare the spec hash captured at session start with the file on disk."""
        session = self.current()
        if session is None or not session.spec_hash:
            return False
        spec_path = Path(session.spec_path)
        if not spec_path.is_file():
            return False
        try:
            current = spec_file_hash(spec_path)
        except MalformedSpec as exc:
            logger.warning("Spec at %s no longer parses: %s", spec_path, exc)
            return True
        return current != session.spec_hash

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def read_progress(self) -> str:
        if not self.progress_path.is_file():
            return ""
        return self.progress_path.read_text(encoding="utf-8")

    @staticmethod
    def get_duration(session: ExecutionSession, now: datetime | None = None) -> str:
        end = now if now is not None else datetime.now(UTC)
        return format_duration((end - session.start_time).total_seconds())

    def _log_progress(self, *messages: str) -> None:
        append_timestamped(self.progress_path, *messages)

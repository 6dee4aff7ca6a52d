"""In-memory session state store shared by concurrently running crawls."""

from __future__ import annotations

import copy
import datetime as dt
import logging
import threading
import uuid
from dataclasses import fields
from typing import Any, Dict, List, Mapping, Optional

from .config import CLEANUP_INTERVAL_SECONDS, SESSION_MAX_AGE_MS
from .models import ErrorRecord, SessionMetadata, SessionState, SessionStatus, StepResult
from .steps import (
    CLICK_EXPAND,
    FINAL_SNAPSHOT,
    INITIAL_SNAPSHOT,
    NAVIGATE,
    SCREENSHOT,
    WAIT_PAGE_LOAD,
)
from .utils import elapsed_ms, utc_now

logger = logging.getLogger("wx_mdx.state")

INITIALIZING = "initializing"
COMPLETED = "completed"
FAILED = "failed"

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

CANONICAL_STEPS = (
    NAVIGATE,
    WAIT_PAGE_LOAD,
    INITIAL_SNAPSHOT,
    CLICK_EXPAND,
    FINAL_SNAPSHOT,
    SCREENSHOT,
)

_METADATA_FIELDS = {f.name for f in fields(SessionMetadata)}


def calculate_progress(state: SessionState) -> int:
    completed = sum(1 for name in CANONICAL_STEPS if name in state.step_results)
    return round(completed / len(CANONICAL_STEPS) * 100)


def determine_status(state: SessionState) -> str:
    if state.current_step == COMPLETED:
        return STATUS_COMPLETED
    if state.current_step == FAILED or state.errors:
        return STATUS_FAILED
    if state.current_step == INITIALIZING:
        return STATUS_PENDING
    return STATUS_RUNNING


class SessionStateStore:
    """Keeps one ``SessionState`` per session id.

    All access goes through a re-entrant lock, so crawls running on the event
    loop, status queries and the background sweeper thread always see whole
    records. Readers receive copies, never the live state.
    """

    def __init__(
        self,
        cleanup_interval: float = CLEANUP_INTERVAL_SECONDS,
        max_age_ms: int = SESSION_MAX_AGE_MS,
    ) -> None:
        self.cleanup_interval = cleanup_interval
        self.max_age_ms = max_age_ms
        self._states: Dict[str, SessionState] = {}
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    def create_session(self, url: str) -> str:
        session_id = str(uuid.uuid4())
        state = SessionState(
            session_id=session_id,
            url=url,
            start_time=utc_now(),
            current_step=INITIALIZING,
        )
        with self._lock:
            self._states[session_id] = state
        logger.info("Created session %s for %s", session_id, url)
        return session_id

    def get_session(self, session_id: str) -> Optional[SessionState]:
        with self._lock:
            state = self._states.get(session_id)
            return copy.deepcopy(state) if state is not None else None

    def _live(self, session_id: str, action: str) -> Optional[SessionState]:
        state = self._states.get(session_id)
        if state is None:
            logger.warning("Ignoring %s for unknown session %s", action, session_id)
        return state

    def update_current_step(self, session_id: str, step_name: str) -> None:
        with self._lock:
            state = self._live(session_id, "current step update")
            if state is None:
                return
            state.current_step = step_name
            state.step_timestamps[step_name] = utc_now()
        logger.debug("Session %s now at step %s", session_id, step_name)

    def update_step_result(self, session_id: str, step_name: str, result: StepResult) -> None:
        with self._lock:
            state = self._live(session_id, "step result")
            if state is None:
                return
            state.step_results[step_name] = result
            state.step_timestamps[step_name] = utc_now()
        logger.debug("Session %s stored result for %s", session_id, step_name)

    def add_error(self, session_id: str, error: ErrorRecord) -> None:
        with self._lock:
            state = self._live(session_id, "error")
            if state is None:
                return
            state.errors.append(error)
        logger.warning("Session %s recorded error at %s: %s", session_id, error.step_name, error.message)

    def update_metadata(self, session_id: str, partial: Mapping[str, Any]) -> None:
        unknown = set(partial) - _METADATA_FIELDS
        if unknown:
            logger.warning("Dropping unknown metadata keys %s", sorted(unknown))
        with self._lock:
            state = self._live(session_id, "metadata update")
            if state is None:
                return
            for key, value in partial.items():
                if key in _METADATA_FIELDS:
                    setattr(state.metadata, key, value)

    def complete_session(self, session_id: str, success: bool) -> None:
        with self._lock:
            state = self._live(session_id, "completion")
            if state is None:
                return
            state.current_step = COMPLETED if success else FAILED
            state.finished_at = utc_now()
            state.step_timestamps[state.current_step] = state.finished_at
        logger.info("Session %s %s", session_id, "completed" if success else "failed")

    def remove_session(self, session_id: str) -> bool:
        with self._lock:
            removed = self._states.pop(session_id, None) is not None
        if removed:
            logger.info("Removed session %s", session_id)
        return removed

    def _status_of(self, state: SessionState, now: dt.datetime) -> SessionStatus:
        end = state.finished_at
        return SessionStatus(
            session_id=state.session_id,
            url=state.url,
            status=determine_status(state),
            current_step=state.current_step,
            progress=calculate_progress(state),
            start_time=state.start_time,
            end_time=end,
            duration_ms=elapsed_ms(state.start_time, end or now),
            error=state.errors[-1].message if state.errors else None,
        )

    def get_status(self, session_id: str) -> Optional[SessionStatus]:
        with self._lock:
            state = self._states.get(session_id)
            if state is None:
                return None
            return self._status_of(state, utc_now())

    def list_statuses(self) -> List[SessionStatus]:
        now = utc_now()
        with self._lock:
            statuses = [self._status_of(state, now) for state in self._states.values()]
        return sorted(statuses, key=lambda status: status.start_time, reverse=True)

    def statistics(self) -> Dict[str, int]:
        with self._lock:
            steps = [state.current_step for state in self._states.values()]
        completed = steps.count(COMPLETED)
        failed = steps.count(FAILED)
        return {
            "total_sessions": len(steps),
            "active_sessions": len(steps) - completed - failed,
            "completed_sessions": completed,
            "failed_sessions": failed,
        }

    def cleanup_expired(
        self,
        max_age_ms: Optional[int] = None,
        now: Optional[dt.datetime] = None,
    ) -> int:
        """Drop sessions that started more than ``max_age_ms`` ago."""
        limit = self.max_age_ms if max_age_ms is None else max_age_ms
        moment = now or utc_now()
        with self._lock:
            expired = [
                session_id
                for session_id, state in self._states.items()
                if elapsed_ms(state.start_time, moment) > limit
            ]
            for session_id in expired:
                del self._states[session_id]
        if expired:
            logger.info("Cleaned up %d expired session(s)", len(expired))
        return len(expired)

    def _sweep(self) -> None:
        while not self._stop.wait(self.cleanup_interval):
            try:
                self.cleanup_expired()
            except Exception:  # pylint: disable=broad-except
                logger.exception("Session cleanup failed")

    def start(self) -> None:
        """Start the background sweeper if it is not already running."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._sweep, name="wx-mdx-session-sweeper", daemon=True
        )
        self._sweeper.start()

    def destroy(self) -> None:
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5)
            self._sweeper = None
        with self._lock:
            self._states.clear()
        logger.info("Session state store destroyed")

"""
Session timeout manager.

Tracks the absolute lifetime of the session, warns before forced logout and
optionally expires idle sessions:

    active -> warning -> final-warning -> expired
    (any non-expired state) -> extended      via extend_session()

Checks are event-driven: each tick schedules the next one at exactly the
moment the next threshold (or the inactivity deadline) is crossed.

Every transition, extension and activity update is broadcast on the
``session-timeout-sync`` topic with a full state snapshot. Peers adopt the
snapshot verbatim, so every window of the same session agrees on when it
ends.

A window that starts while others are running announces itself with
``session-started``; live peers answer with ``session-state`` and the new
window joins their session instead of timing its own. Snapshots are ordered
by (generation, extensions_granted, status, last_activity), where the
generation only grows on ``reset_session()``. Anything ordered below the
current state is stale, so late or repeated messages change nothing.
"""

import logging
import uuid
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Any, Callable, Optional

from config.settings import SessionTimeoutSettings
from core.errors import AlreadyActiveError, NotActiveError, ValidationError
from core.scheduling import LoopScheduler, Scheduler, TimerHandle
from core.sync_channel import SESSION_TIMEOUT_TOPIC, Subscription, SyncChannel, SyncMessage

logger = logging.getLogger(__name__)

# Sync message types
SESSION_EXTENDED = "session-extended"
WARNING_SHOWN = "warning-shown"
FINAL_WARNING_SHOWN = "final-warning-shown"
SESSION_EXPIRED = "session-expired"
ACTIVITY_UPDATED = "activity-updated"
SESSION_RESET = "session-reset"
SESSION_STARTED = "session-started"
SESSION_STATE = "session-state"

SNAPSHOT_MESSAGES = (
    SESSION_EXTENDED, WARNING_SHOWN, FINAL_WARNING_SHOWN,
    SESSION_EXPIRED, ACTIVITY_UPDATED, SESSION_RESET, SESSION_STATE,
)

# Threshold comparisons absorb float rounding in epoch arithmetic
_TOLERANCE = 1e-3


class SessionStatus(str, Enum):
    ACTIVE = "active"
    WARNING = "warning"
    FINAL_WARNING = "final-warning"
    EXTENDED = "extended"
    EXPIRED = "expired"


# Progress within one extension count; extended sits with active
_STATUS_RANK = {
    SessionStatus.ACTIVE: 0,
    SessionStatus.EXTENDED: 0,
    SessionStatus.WARNING: 1,
    SessionStatus.FINAL_WARNING: 2,
    SessionStatus.EXPIRED: 3,
}


@dataclass
class SessionState:
    """Timeout state of the current session. Times are epoch seconds."""
    status: SessionStatus
    session_start: float
    last_activity: float
    expires_at: float
    time_remaining: float
    warnings_shown: int = 0
    extensions_granted: int = 0
    max_extensions: int = 3
    generation: int = 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    def order_key(self) -> tuple:
        return (
            self.generation,
            self.extensions_granted,
            _STATUS_RANK[self.status],
            self.last_activity,
        )

    @classmethod
    def from_dict(cls, data: dict) -> "SessionState":
        return cls(
            status=SessionStatus(data["status"]),
            session_start=float(data["session_start"]),
            last_activity=float(data["last_activity"]),
            expires_at=float(data["expires_at"]),
            time_remaining=float(data["time_remaining"]),
            warnings_shown=int(data.get("warnings_shown", 0)),
            extensions_granted=int(data.get("extensions_granted", 0)),
            max_extensions=int(data.get("max_extensions", 3)),
            generation=int(data.get("generation", 0)),
        )


@dataclass
class SessionTimeoutEvents:
    """Presentation-layer callbacks. Any of them may be left unset."""
    on_warning: Optional[Callable[[float], Any]] = None
    on_final_warning: Optional[Callable[[float], Any]] = None
    on_extended: Optional[Callable[[float], Any]] = None
    on_timeout: Optional[Callable[[], Any]] = None
    on_state_change: Optional[Callable[[SessionState], Any]] = None
    on_activity: Optional[Callable[[str], Any]] = None


@dataclass
class SessionMetrics:
    sessions_started: int = 0
    timeout_count: int = 0
    inactivity_timeouts: int = 0
    extension_count: int = 0
    activity_updates: int = 0
    warnings_shown: int = 0
    total_session_time: float = 0.0

    @property
    def abandonment_rate(self) -> float:
        """Share of started sessions that ended by timing out."""
        if not self.sessions_started:
            return 0.0
        return self.timeout_count / self.sessions_started

    @property
    def average_session_length(self) -> float:
        ended = self.timeout_count
        return self.total_session_time / ended if ended else 0.0


class SessionTimeoutManager:
    """Warns before, and enforces, session expiry."""

    def __init__(
        self,
        settings: Optional[SessionTimeoutSettings] = None,
        scheduler: Optional[Scheduler] = None,
        sync_channel: Optional[SyncChannel] = None,
        events: Optional[SessionTimeoutEvents] = None,
        instance_id: Optional[str] = None,
    ):
        self.settings = settings or SessionTimeoutSettings()
        self.instance_id = instance_id or uuid.uuid4().hex[:8]
        self.events = events or SessionTimeoutEvents()
        self.metrics = SessionMetrics()
        self._scheduler = scheduler or LoopScheduler()
        self._sync_channel = sync_channel

        self._active = False
        self._state: Optional[SessionState] = None
        self._timer: Optional[TimerHandle] = None
        self._subscription: Optional[Subscription] = None
        # Set at start; cleared once this window changes state, joins a session or answers a join
        self._joining = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def is_active(self) -> bool:
        return self._active

    def start(self, strict: bool = False) -> None:
        """Start the manager and a fresh session."""
        if self._active:
            if strict:
                raise AlreadyActiveError("Session timeout manager is already running")
            logger.warning("Session timeout manager already running", extra={"instance_id": self.instance_id})
            return

        self._active = True
        if self._sync_channel is not None and self.settings.enable_sync:
            self._subscription = self._sync_channel.subscribe(
                SESSION_TIMEOUT_TOPIC, self.handle_sync_message, instance_id=self.instance_id
            )
        self._begin_session()
        self._joining = True
        self._broadcast(SESSION_STARTED)
        logger.info(
            f"Session timeout started (duration={self.settings.session_duration}s, "
            f"warning={self.settings.warning_threshold}s)",
            extra={"instance_id": self.instance_id},
        )

    def stop(self, strict: bool = False) -> None:
        if not self._active:
            if strict:
                raise NotActiveError("Session timeout manager is not running")
            return

        self._active = False
        self._joining = False
        self._cancel_timer()
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        logger.info("Session timeout stopped", extra={"instance_id": self.instance_id})

    def reset_session(self) -> SessionState:
        """Discard the current session and start a new one (e.g. after re-login)."""
        if not self._active:
            raise NotActiveError("Session timeout manager is not running")
        self._begin_session(generation=self._state.generation + 1)
        self._broadcast(SESSION_RESET)
        return self.get_state()

    def _begin_session(self, generation: int = 0) -> None:
        now = self._scheduler.time()
        duration = self.settings.session_duration
        self._state = SessionState(
            status=SessionStatus.ACTIVE,
            session_start=now,
            last_activity=now,
            expires_at=now + duration,
            time_remaining=duration,
            max_extensions=self.settings.max_extensions,
            generation=generation,
        )
        self.metrics.sessions_started += 1
        self._emit(self.events.on_state_change, self.get_state())
        self._schedule_next()

    # =========================================================================
    # User actions
    # =========================================================================

    def extend_session(self, amount: Optional[float] = None) -> bool:
        """
        Push the expiry back.

        Returns:
            False when the session has expired or no extensions are left;
            the state is untouched in that case.

        Raises:
            NotActiveError: manager not running
        """
        if not self._active or self._state is None:
            raise NotActiveError("Session timeout manager is not running")
        if amount is not None and amount <= 0:
            raise ValidationError(f"Extension amount must be positive, got {amount}")

        state = self._state
        if state.status == SessionStatus.EXPIRED:
            logger.info("Cannot extend an expired session", extra={"instance_id": self.instance_id})
            return False
        if state.extensions_granted >= state.max_extensions:
            logger.warning(
                f"Session extension refused: limit of {state.max_extensions} reached",
                extra={"instance_id": self.instance_id},
            )
            return False

        now = self._scheduler.time()
        if amount is None:
            amount = self.settings.extension_amount or self.settings.session_duration
        state.expires_at += amount
        state.extensions_granted += 1
        state.status = SessionStatus.EXTENDED
        state.last_activity = now
        state.time_remaining = state.expires_at - now
        self.metrics.extension_count += 1

        logger.info(
            f"Session extended by {amount:.0f}s ({state.extensions_granted}/{state.max_extensions})",
            extra={"instance_id": self.instance_id},
        )
        self._emit(self.events.on_extended, state.expires_at)
        self._emit(self.events.on_state_change, self.get_state())
        self._broadcast(SESSION_EXTENDED)
        self._schedule_next()
        return True

    def update_activity(self, kind: str = "user") -> None:
        """Record user activity (only affects the inactivity timeout)."""
        if not self._active or self._state is None or self._state.status == SessionStatus.EXPIRED:
            return

        self._state.last_activity = self._scheduler.time()
        self.metrics.activity_updates += 1
        self._emit(self.events.on_activity, kind)
        self._broadcast(ACTIVITY_UPDATED)

    def can_extend(self) -> bool:
        state = self._state
        return (
            self._active and state is not None
            and state.status != SessionStatus.EXPIRED
            and state.extensions_granted < state.max_extensions
        )

    def remaining_extensions(self) -> int:
        if self._state is None:
            return self.settings.max_extensions
        return max(0, self._state.max_extensions - self._state.extensions_granted)

    # =========================================================================
    # Timer
    # =========================================================================

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _next_check_delay(self, now: float) -> float:
        state = self._state
        remaining = state.expires_at - now
        thresholds = (self.settings.warning_threshold, self.settings.final_warning_threshold, 0.0)
        candidates = [remaining - t for t in thresholds if remaining - t > _TOLERANCE]

        if self.settings.inactivity_timeout is not None:
            idle_deadline = state.last_activity + self.settings.inactivity_timeout - now
            if idle_deadline > _TOLERANCE:
                candidates.append(idle_deadline)

        return min(candidates) if candidates else 0.0

    def _schedule_next(self) -> None:
        self._cancel_timer()
        if not self._active or self._state is None or self._state.status == SessionStatus.EXPIRED:
            return
        delay = self._next_check_delay(self._scheduler.time())
        self._timer = self._scheduler.call_later(delay, self._check)

    def _check(self) -> None:
        self._timer = None
        state = self._state
        if not self._active or state is None or state.status == SessionStatus.EXPIRED:
            return

        now = self._scheduler.time()
        state.time_remaining = state.expires_at - now
        inactivity = self.settings.inactivity_timeout

        if inactivity is not None and now - state.last_activity >= inactivity - _TOLERANCE:
            self._expire(now, reason="inactivity")
            return
        if state.time_remaining <= _TOLERANCE:
            self._expire(now, reason="timeout")
            return
        if state.time_remaining <= self.settings.final_warning_threshold + _TOLERANCE:
            self._enter_warning(SessionStatus.FINAL_WARNING)
        elif state.time_remaining <= self.settings.warning_threshold + _TOLERANCE:
            self._enter_warning(SessionStatus.WARNING)

        self._schedule_next()

    def _enter_warning(self, status: SessionStatus) -> None:
        state = self._state
        if state.status == status:
            return

        state.status = status
        state.warnings_shown += 1
        self.metrics.warnings_shown += 1
        logger.info(
            f"Session {status.value}: {state.time_remaining:.0f}s remaining",
            extra={"instance_id": self.instance_id},
        )

        if status == SessionStatus.FINAL_WARNING:
            self._emit(self.events.on_final_warning, state.time_remaining)
            self._emit(self.events.on_state_change, self.get_state())
            self._broadcast(FINAL_WARNING_SHOWN)
        else:
            self._emit(self.events.on_warning, state.time_remaining)
            self._emit(self.events.on_state_change, self.get_state())
            self._broadcast(WARNING_SHOWN)

    def _expire(self, now: float, reason: str) -> None:
        state = self._state
        state.status = SessionStatus.EXPIRED
        state.time_remaining = 0.0
        self._cancel_timer()
        self._record_timeout(state, now, reason)

        logger.info(f"Session expired ({reason})", extra={"instance_id": self.instance_id})
        self._emit(self.events.on_timeout)
        self._emit(self.events.on_state_change, self.get_state())
        self._broadcast(SESSION_EXPIRED, reason=reason)

    def _record_timeout(self, state: SessionState, now: float, reason: str) -> None:
        self.metrics.timeout_count += 1
        if reason == "inactivity":
            self.metrics.inactivity_timeouts += 1
        self.metrics.total_session_time += max(0.0, now - state.session_start)

    # =========================================================================
    # Cross-instance sync
    # =========================================================================

    def handle_sync_message(self, message: SyncMessage) -> None:
        """Adopt a peer's state snapshot. Duplicates and stale snapshots are no-ops."""
        if message.source == self.instance_id or not self._active:
            return
        if message.type == SESSION_STARTED:
            self._answer_join()
            return
        if message.type not in SNAPSHOT_MESSAGES:
            logger.debug(f"Ignoring unknown session sync message '{message.type}'")
            return

        try:
            incoming = SessionState.from_dict(message.data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Invalid session snapshot from peer: {e}", extra={"instance_id": self.instance_id})
            return

        previous = self._state
        joining = (
            self._joining and message.type == SESSION_STATE
            and incoming.status != SessionStatus.EXPIRED
        )
        if previous is not None and not joining:
            if incoming == previous or self._is_stale(incoming, previous):
                return

        self._joining = False
        self._state = incoming
        if previous is None or previous.status != incoming.status:
            self._fire_entry_events(incoming)
        self._emit(self.events.on_state_change, self.get_state())

        if incoming.status == SessionStatus.EXPIRED:
            self._cancel_timer()
        else:
            self._schedule_next()

    @staticmethod
    def _is_stale(incoming: SessionState, current: SessionState) -> bool:
        if incoming.generation != current.generation:
            return incoming.generation < current.generation
        # Expired stays expired until a reset bumps the generation
        if current.status == SessionStatus.EXPIRED:
            return True
        return incoming.order_key() <= current.order_key()

    def _answer_join(self) -> None:
        """Tell a newly started window about the running session."""
        self._joining = False
        if self._state is None or self._state.status == SessionStatus.EXPIRED:
            return
        self._broadcast(SESSION_STATE)

    def _fire_entry_events(self, state: SessionState) -> None:
        if state.status == SessionStatus.WARNING:
            self._emit(self.events.on_warning, state.time_remaining)
        elif state.status == SessionStatus.FINAL_WARNING:
            self._emit(self.events.on_final_warning, state.time_remaining)
        elif state.status == SessionStatus.EXTENDED:
            self._emit(self.events.on_extended, state.expires_at)
        elif state.status == SessionStatus.EXPIRED:
            self._record_timeout(state, self._scheduler.time(), reason="peer")
            self._emit(self.events.on_timeout)

    def _broadcast(self, message_type: str, **extra: Any) -> None:
        if message_type not in (SESSION_STARTED, SESSION_STATE):
            self._joining = False
        if self._sync_channel is None or not self.settings.enable_sync or self._state is None:
            return
        data = self._state.to_dict()
        data.update(extra)
        self._sync_channel.publish(
            SESSION_TIMEOUT_TOPIC,
            SyncMessage(type=message_type, data=data, source=self.instance_id),
        )

    def _emit(self, callback: Optional[Callable], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Session timeout callback raised", extra={"instance_id": self.instance_id})

    # =========================================================================
    # Reporting
    # =========================================================================

    def get_state(self) -> Optional[SessionState]:
        """Snapshot of the current state with a live ``time_remaining``."""
        if self._state is None:
            return None
        if self._state.status == SessionStatus.EXPIRED:
            return replace(self._state)
        remaining = max(0.0, self._state.expires_at - self._scheduler.time())
        return replace(self._state, time_remaining=remaining)

    def get_metrics(self) -> dict:
        m = self.metrics
        current = 0.0
        if self._state is not None and self._state.status != SessionStatus.EXPIRED:
            current = self._scheduler.time() - self._state.session_start
        return {
            "sessions_started": m.sessions_started,
            "timeout_count": m.timeout_count,
            "inactivity_timeouts": m.inactivity_timeouts,
            "extension_count": m.extension_count,
            "activity_updates": m.activity_updates,
            "warnings_shown": m.warnings_shown,
            "total_session_time": m.total_session_time,
            "average_session_length": m.average_session_length,
            "abandonment_rate": m.abandonment_rate,
            "current_session_time": current,
        }

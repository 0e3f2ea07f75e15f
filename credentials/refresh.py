"""
Token refresh manager.

Keeps the session's credential fresh on a fixed interval:

- a circuit breaker stops refresh attempts for ``reset_window`` seconds
  after ``max_retries`` consecutive failures
- peers sharing the session coordinate over the ``token-refresh-sync``
  topic so only one of them talks to the authority at a time
- a periodic security check records unusual failure patterns

Rotation decisions can be delegated to a TokenRotationManager; without one
the credential is refreshed once it is within ``refresh_buffer`` of expiry.

Event callbacks (``on_success(token)``, ``on_error(exc)``) are plain
callables; an exception inside one is logged and ignored.
"""

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Optional

from config.settings import RefreshSettings
from core.circuit_breaker import CircuitBreaker, CircuitState
from core.errors import AlreadyActiveError, NotActiveError, RotationFailedError, ValidationError
from core.scheduling import LoopScheduler, Scheduler, TimerHandle
from core.security_events import SecurityEventLog
from core.sync_channel import TOKEN_REFRESH_TOPIC, Subscription, SyncChannel, SyncMessage
from credentials.authority import CredentialAuthority
from credentials.rotation import TokenRotationManager
from credentials.tokens import CredentialToken

logger = logging.getLogger(__name__)

# Sync message types
REFRESH_STARTED = "refresh-started"
REFRESH_SUCCESS = "refresh-success"
REFRESH_ERROR = "refresh-error"


class RefreshOutcome(str, Enum):
    """Result of one refresh attempt."""
    REFRESHED = "refreshed"
    FALLBACK = "fallback"
    NOT_NEEDED = "not_needed"
    SKIPPED = "skipped"      # circuit open
    FAILED = "failed"
    DISCARDED = "discarded"  # manager stopped mid-flight


@dataclass
class RefreshMetrics:
    total_refreshes: int = 0
    successful_refreshes: int = 0
    failed_refreshes: int = 0
    skipped_refreshes: int = 0
    synced_refreshes: int = 0
    security_events: int = 0
    average_refresh_time: float = 0.0
    last_refresh_time: Optional[float] = None

    def to_dict(self) -> dict:
        return asdict(self)


def _freshness(token: CredentialToken) -> tuple:
    return (token.expires_at, token.issued_at)


class TokenRefreshManager:
    """Refreshes the session credential on a schedule."""

    def __init__(
        self,
        authority: CredentialAuthority,
        settings: Optional[RefreshSettings] = None,
        scheduler: Optional[Scheduler] = None,
        sync_channel: Optional[SyncChannel] = None,
        rotation_manager: Optional[TokenRotationManager] = None,
        security_log: Optional[SecurityEventLog] = None,
        on_success: Optional[Callable[[CredentialToken], Any]] = None,
        on_error: Optional[Callable[[Exception], Any]] = None,
        instance_id: Optional[str] = None,
    ):
        self.settings = settings or RefreshSettings()
        self.instance_id = instance_id or uuid.uuid4().hex[:8]
        self._authority = authority
        self._scheduler = scheduler or LoopScheduler()
        self._sync_channel = sync_channel

        if rotation_manager is None and self.settings.enable_advanced_rotation:
            rotation_manager = TokenRotationManager(
                authority, scheduler=self._scheduler, instance_id=self.instance_id
            )
        self.rotation_manager = rotation_manager

        self.breaker = CircuitBreaker(
            "token-refresh",
            failure_threshold=self.settings.max_retries,
            reset_window=self.settings.reset_window,
            clock=self._scheduler.time,
        )
        self.security_log = security_log or SecurityEventLog(clock=self._scheduler.time)
        self.on_success = on_success
        self.on_error = on_error

        self.metrics = RefreshMetrics()
        self._lock = asyncio.Lock()
        self._active = False
        self._paused = False
        self._generation = 0
        self._started_at: Optional[float] = None
        self._last_success_at: Optional[float] = None
        self._current_token: Optional[CredentialToken] = None
        self._subscription: Optional[Subscription] = None
        self._refresh_timer: Optional[TimerHandle] = None
        self._monitor_timer: Optional[TimerHandle] = None
        self._pause_timer: Optional[TimerHandle] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def current_token(self) -> Optional[CredentialToken]:
        return self._current_token

    def start(self, strict: bool = False) -> None:
        if self._active:
            if strict:
                raise AlreadyActiveError("Token refresh manager is already running")
            logger.warning("Token refresh manager already running", extra={"instance_id": self.instance_id})
            return

        self._active = True
        self._started_at = self._scheduler.time()

        if self._sync_channel is not None and self.settings.enable_sync:
            self._subscription = self._sync_channel.subscribe(
                TOKEN_REFRESH_TOPIC, self.handle_sync_message, instance_id=self.instance_id
            )
        if self.rotation_manager is not None:
            self.rotation_manager.start(monitor=False)

        self._schedule_refresh()
        if self.settings.enable_security_monitoring:
            self._schedule_security_check()

        logger.info(
            f"Token refresh started (interval={self.settings.refresh_interval}s, "
            f"rotation={'on' if self.rotation_manager else 'off'})",
            extra={"instance_id": self.instance_id},
        )

    def stop(self, strict: bool = False) -> None:
        if not self._active:
            if strict:
                raise NotActiveError("Token refresh manager is not running")
            return

        self._active = False
        self._paused = False
        self._generation += 1
        for timer in (self._refresh_timer, self._monitor_timer, self._pause_timer):
            if timer is not None:
                timer.cancel()
        self._refresh_timer = self._monitor_timer = self._pause_timer = None

        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        if self.rotation_manager is not None:
            self.rotation_manager.stop()

        logger.info("Token refresh stopped", extra={"instance_id": self.instance_id})

    # =========================================================================
    # Refresh
    # =========================================================================

    async def refresh_token(self) -> RefreshOutcome:
        """Run one refresh attempt now (serialized with scheduled ticks)."""
        async with self._lock:
            return await self._perform_refresh()

    async def _perform_refresh(self) -> RefreshOutcome:
        if not self.breaker.allow_request():
            self.metrics.skipped_refreshes += 1
            logger.info(
                f"Token refresh skipped: circuit open "
                f"({self.breaker.remaining_open_time():.1f}s until reset)",
                extra={"instance_id": self.instance_id},
            )
            return RefreshOutcome.SKIPPED

        generation = self._generation
        started = self._scheduler.time()
        fallback = False

        try:
            token = await self._resolve_token()
            if token is None:
                raise ValidationError("No active session to refresh")

            if self.rotation_manager is not None:
                if not self.rotation_manager.should_rotate(token):
                    return RefreshOutcome.NOT_NEEDED
                self._broadcast(REFRESH_STARTED)
                result = await self.rotation_manager.rotate_token(token)
                if result.discarded:
                    return RefreshOutcome.DISCARDED
                new_token, fallback = result.token, result.fallback
            else:
                if token.remaining(started) > self.settings.refresh_buffer:
                    return RefreshOutcome.NOT_NEEDED
                self._broadcast(REFRESH_STARTED)
                new_token = await self._authority.refresh()
                if new_token is None:
                    raise RotationFailedError("Credential authority returned no credential")

        except Exception as e:
            if generation != self._generation:
                logger.debug(f"Discarding refresh failure after stop: {e}")
                return RefreshOutcome.DISCARDED
            self._handle_failure(e)
            return RefreshOutcome.FAILED

        if generation != self._generation:
            logger.debug("Discarding refresh result after stop")
            return RefreshOutcome.DISCARDED

        if fallback:
            self._handle_fallback(new_token)
            return RefreshOutcome.FALLBACK

        self._handle_success(new_token, self._scheduler.time() - started)
        return RefreshOutcome.REFRESHED

    async def _resolve_token(self) -> Optional[CredentialToken]:
        session = await self._authority.get_current_session()
        token = session.token if session is not None else None
        local = self._current_token
        if local is not None and (token is None or local.expires_at > token.expires_at):
            return local
        return token

    def _handle_success(self, token: CredentialToken, duration: float) -> None:
        m = self.metrics
        m.total_refreshes += 1
        m.successful_refreshes += 1
        m.average_refresh_time = (
            (m.average_refresh_time * (m.successful_refreshes - 1)) + duration
        ) / m.successful_refreshes
        m.last_refresh_time = self._last_success_at = self._scheduler.time()

        self.breaker.record_success()
        self._current_token = token
        logger.info(f"Token refreshed ({token.masked()})", extra={"instance_id": self.instance_id})

        self._notify(self.on_success, token)
        self._broadcast(REFRESH_SUCCESS, {"token": token.to_dict()})

    def _handle_failure(self, error: Exception) -> None:
        self.metrics.total_refreshes += 1
        self.metrics.failed_refreshes += 1
        self._record_breaker_failure()

        logger.warning(f"Token refresh failed: {error}", extra={"instance_id": self.instance_id})
        self._security_event(
            "token_refresh_failure",
            error=str(error),
            consecutive_failures=self.breaker.failure_count,
        )

        self._notify(self.on_error, error)
        self._broadcast(REFRESH_ERROR, {"message": str(error)})

    def _handle_fallback(self, token: CredentialToken) -> None:
        # The authority call itself failed, so the breaker still counts it
        self.metrics.total_refreshes += 1
        self.metrics.failed_refreshes += 1
        self._record_breaker_failure()
        self._current_token = token

        self._security_event(
            "fallback_credential_issued",
            severity="critical",
            expires_at=token.expires_at.isoformat(),
        )
        self._notify(self.on_success, token)
        self._broadcast(REFRESH_SUCCESS, {"token": token.to_dict()})

    def _record_breaker_failure(self) -> None:
        was_closed = self.breaker.state == CircuitState.CLOSED
        self.breaker.record_failure()
        if was_closed and self.breaker.state == CircuitState.OPEN:
            self._security_event(
                "circuit_opened",
                failures=self.breaker.failure_count,
                reset_window=self.settings.reset_window,
            )

    # =========================================================================
    # Cross-instance sync
    # =========================================================================

    def handle_sync_message(self, message: SyncMessage) -> None:
        """Apply a peer's broadcast. Safe to call repeatedly with the same message."""
        if message.source == self.instance_id:
            return

        if message.type == REFRESH_STARTED:
            self._pause()
        elif message.type == REFRESH_SUCCESS:
            self._adopt(message.data.get("token"))
            self._resume()
        elif message.type == REFRESH_ERROR:
            self._resume()
        else:
            logger.debug(f"Ignoring unknown refresh sync message '{message.type}'")

    def _adopt(self, payload: Optional[dict]) -> None:
        if not payload:
            return
        try:
            token = CredentialToken.from_dict(payload)
        except ValidationError as e:
            logger.warning(f"Ignoring peer credential: {e}", extra={"instance_id": self.instance_id})
            return

        current = self._current_token
        if current is not None and _freshness(token) <= _freshness(current):
            # Duplicate, or older than what we hold; peers may deliver out of order
            return
        self._current_token = token
        self.metrics.synced_refreshes += 1
        logger.info(f"Adopted credential refreshed by peer ({token.masked()})",
                    extra={"instance_id": self.instance_id})
        self._notify(self.on_success, token)

    def _pause(self) -> None:
        if not self._active or self._paused:
            return
        self._paused = True
        if self._refresh_timer is not None:
            self._refresh_timer.cancel()
            self._refresh_timer = None
        self._pause_timer = self._scheduler.call_later(
            self.settings.peer_refresh_timeout, self._resume
        )
        logger.debug("Local refresh paused while a peer refreshes", extra={"instance_id": self.instance_id})

    def _resume(self) -> None:
        if not self._paused:
            return
        self._paused = False
        if self._pause_timer is not None:
            self._pause_timer.cancel()
            self._pause_timer = None
        if self._active and self._refresh_timer is None:
            self._schedule_refresh()

    def _broadcast(self, message_type: str, data: Optional[dict] = None) -> None:
        if self._sync_channel is None or not self.settings.enable_sync:
            return
        self._sync_channel.publish(
            TOKEN_REFRESH_TOPIC,
            SyncMessage(type=message_type, data=data or {}, source=self.instance_id),
        )

    # =========================================================================
    # Timers
    # =========================================================================

    def _schedule_refresh(self) -> None:
        self._refresh_timer = self._scheduler.call_later(self.settings.refresh_interval, self._refresh_tick)

    async def _refresh_tick(self) -> None:
        self._refresh_timer = None
        generation = self._generation
        await self.refresh_token()
        if (self._active and generation == self._generation
                and not self._paused and self._refresh_timer is None):
            self._schedule_refresh()

    def _schedule_security_check(self) -> None:
        self._monitor_timer = self._scheduler.call_later(
            self.settings.security_check_interval, self._security_check
        )

    def _security_check(self) -> None:
        self._monitor_timer = None
        if not self._active:
            return

        m = self.metrics
        if m.failed_refreshes > m.successful_refreshes:
            self._security_event(
                "high_failure_rate",
                failed=m.failed_refreshes,
                successful=m.successful_refreshes,
            )

        reference = self._last_success_at if self._last_success_at is not None else self._started_at
        since = self._scheduler.time() - reference
        limit = self.settings.long_interval_factor * self.settings.refresh_interval
        if since > limit:
            self._security_event("long_refresh_interval", seconds_since_refresh=round(since, 1))

        self._schedule_security_check()

    def _security_event(self, event_type: str, severity: str = "warning", **details: Any) -> None:
        self.metrics.security_events += 1
        self.security_log.record(event_type, severity=severity, instance_id=self.instance_id, **details)

    def _notify(self, callback: Optional[Callable], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Refresh event callback raised", extra={"instance_id": self.instance_id})

    # =========================================================================
    # Reporting
    # =========================================================================

    def get_metrics(self) -> dict:
        metrics = self.metrics.to_dict()
        metrics["circuit"] = self.breaker.get_status().to_dict()
        if self.rotation_manager is not None:
            metrics["rotation"] = self.rotation_manager.get_metrics()
        return metrics

    def reset_metrics(self) -> None:
        self.metrics = RefreshMetrics()
        if self.rotation_manager is not None:
            self.rotation_manager.reset_metrics()

    def get_status(self) -> dict:
        return {
            "instance_id": self.instance_id,
            "active": self._active,
            "paused": self._paused,
            "circuit_state": self.breaker.state.value,
            "next_refresh_at": self._refresh_timer.when if self._refresh_timer is not None else None,
            "last_refresh_time": self.metrics.last_refresh_time,
            "current_token": self._current_token.masked() if self._current_token else None,
        }

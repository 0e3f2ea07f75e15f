"""
Token rotation manager.

Decides when the current credential should be replaced (via a rotation
strategy), exchanges it with the credential authority, and keeps rotation
metrics. After ``max_refresh_attempts`` consecutive failed exchanges it
issues a short-lived fallback credential instead of surfacing the error,
then starts counting again from zero.

Usage:
    manager = TokenRotationManager(authority, settings=settings.rotation,
                                   scheduler=LoopScheduler())
    manager.start()
    if manager.should_rotate(token):
        result = await manager.rotate_token(token)
"""

import logging
import secrets
import uuid
from dataclasses import asdict, dataclass
from typing import Callable, Optional, Union

from config.settings import RotationSettings
from core.errors import AlreadyActiveError, NotActiveError, RotationFailedError, ValidationError
from core.scheduling import LoopScheduler, Scheduler, TimerHandle
from core.timestamps import from_epoch
from credentials.authority import CredentialAuthority
from credentials.strategy import RotationStrategy, get_strategy, strategy_name
from credentials.tokens import CredentialToken

logger = logging.getLogger(__name__)

FallbackIssuer = Callable[[CredentialToken, float], CredentialToken]


@dataclass
class RotationMetrics:
    """Counters owned by one rotation manager."""
    total_rotations: int = 0
    successful_rotations: int = 0
    failed_rotations: int = 0
    refresh_tokens_rotated: int = 0
    validation_failures: int = 0
    fallback_activations: int = 0
    average_rotation_time: float = 0.0
    last_rotation_time: Optional[float] = None
    strategy: str = "adaptive"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class RotationResult:
    """Outcome of one ``rotate_token`` call."""
    success: bool
    token: Optional[CredentialToken] = None
    fallback: bool = False
    duration: float = 0.0
    discarded: bool = False


class TokenRotationManager:
    """Rotates credentials before they expire."""

    def __init__(
        self,
        authority: CredentialAuthority,
        settings: Optional[RotationSettings] = None,
        scheduler: Optional[Scheduler] = None,
        strategy: Optional[RotationStrategy] = None,
        fallback_issuer: Optional[FallbackIssuer] = None,
        instance_id: Optional[str] = None,
    ):
        self.settings = settings or RotationSettings()
        self.instance_id = instance_id or uuid.uuid4().hex[:8]
        self._authority = authority
        self._scheduler = scheduler or LoopScheduler()
        self._strategy = strategy or get_strategy(
            self.settings.strategy, self.settings, clock=self._scheduler.time
        )
        self._fallback_issuer = fallback_issuer or self._issue_fallback_token
        self._monitor = self.settings.monitor

        self._active = False
        self._generation = 0
        self._consecutive_failures = 0
        self._current_token: Optional[CredentialToken] = None
        self._timer: Optional[TimerHandle] = None

        self.metrics = RotationMetrics(strategy=strategy_name(self._strategy))

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def current_token(self) -> Optional[CredentialToken]:
        return self._current_token

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def strategy(self) -> RotationStrategy:
        return self._strategy

    def start(self, strict: bool = False, monitor: Optional[bool] = None) -> None:
        """
        Start the manager.

        Args:
            strict: Raise AlreadyActiveError instead of warning when running
            monitor: Override ``settings.monitor`` (own rotation loop)
        """
        if self._active:
            if strict:
                raise AlreadyActiveError("Token rotation manager is already running")
            logger.warning("Token rotation manager already running", extra={"instance_id": self.instance_id})
            return

        self._active = True
        if monitor is not None:
            self._monitor = monitor
        if self._monitor:
            self._schedule_check(0.0)
        logger.info(
            f"Token rotation started (strategy={self.metrics.strategy}, monitor={self._monitor})",
            extra={"instance_id": self.instance_id},
        )

    def stop(self, strict: bool = False) -> None:
        if not self._active:
            if strict:
                raise NotActiveError("Token rotation manager is not running")
            return

        self._active = False
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        logger.info("Token rotation stopped", extra={"instance_id": self.instance_id})

    def update_strategy(self, strategy: Union[str, RotationStrategy]) -> None:
        """Swap the rotation strategy; a running loop rechecks immediately."""
        if isinstance(strategy, str):
            strategy = get_strategy(strategy, self.settings, clock=self._scheduler.time)
        self._strategy = strategy
        self.metrics.strategy = strategy_name(strategy)
        logger.info(f"Rotation strategy set to {self.metrics.strategy}")

        if self._active and self._monitor:
            if self._timer is not None:
                self._timer.cancel()
            self._schedule_check(0.0)

    # =========================================================================
    # Decisions
    # =========================================================================

    def should_rotate(self, token: CredentialToken) -> bool:
        if not self._active:
            return False
        try:
            return bool(self._strategy.should_rotate(token))
        except Exception as e:
            logger.warning(f"Rotation strategy {self.metrics.strategy} failed: {e}")
            return False

    def next_check_delay(self, token: CredentialToken) -> float:
        try:
            return max(0.0, float(self._strategy.rotation_urgency(token)))
        except Exception as e:
            logger.warning(f"Rotation strategy {self.metrics.strategy} failed: {e}")
            return self.settings.rotation_delay

    # =========================================================================
    # Rotation
    # =========================================================================

    async def rotate_token(self, token: CredentialToken) -> RotationResult:
        """
        Exchange ``token`` for a new credential.

        Raises:
            ValidationError: ``token`` failed validation (not retried)
            RotationFailedError: the fallback issuer failed
            Exception: the authority's error, while below the attempt limit
        """
        if self.settings.enable_token_validation:
            self._validate(token)

        generation = self._generation
        started = self._scheduler.time()

        try:
            new_token = await self._authority.refresh()
            if new_token is None:
                raise RotationFailedError("Credential authority returned no credential")
        except Exception as e:
            if generation != self._generation:
                logger.debug(f"Discarding rotation failure after stop: {e}")
                return RotationResult(success=False, discarded=True)
            fallback = self._record_failure(token, e)
            if fallback is None:
                raise
            return fallback

        if generation != self._generation:
            logger.debug("Discarding rotation result after stop")
            return RotationResult(success=False, discarded=True)

        duration = self._scheduler.time() - started
        self._record_success(token, new_token, duration)
        return RotationResult(success=True, token=new_token, duration=duration)

    def _validate(self, token: CredentialToken) -> None:
        problem = None
        if not token.access_secret:
            problem = "Access secret is empty"
        elif token.is_expired(self._scheduler.time()):
            problem = "Credential has expired"
        elif not token.is_well_formed():
            problem = "Credential is malformed"
        elif self.settings.enable_refresh_token_rotation and not token.refresh_secret:
            problem = "Refresh secret is required for refresh-token rotation"

        if problem:
            self.metrics.validation_failures += 1
            logger.warning(f"Token validation failed: {problem}", extra={"instance_id": self.instance_id})
            raise ValidationError(problem)

    def _record_success(self, old: CredentialToken, new: CredentialToken, duration: float) -> None:
        m = self.metrics
        m.total_rotations += 1
        m.successful_rotations += 1
        m.average_rotation_time = (
            (m.average_rotation_time * (m.successful_rotations - 1)) + duration
        ) / m.successful_rotations
        m.last_rotation_time = self._scheduler.time()

        if (self.settings.enable_refresh_token_rotation and new.refresh_secret
                and new.refresh_secret != old.refresh_secret):
            m.refresh_tokens_rotated += 1

        self._consecutive_failures = 0
        self._current_token = new
        logger.info(
            f"Token rotated ({new.masked()}, expires {new.expires_at.isoformat()})",
            extra={"instance_id": self.instance_id, "duration_ms": round(duration * 1000, 1)},
        )

    def _record_failure(self, token: CredentialToken, error: Exception) -> Optional[RotationResult]:
        self.metrics.total_rotations += 1
        self.metrics.failed_rotations += 1
        self._consecutive_failures += 1
        limit = self.settings.max_refresh_attempts

        logger.warning(
            f"Token rotation failed ({self._consecutive_failures}/{limit}): {error}",
            extra={"instance_id": self.instance_id},
        )
        if self._consecutive_failures < limit:
            return None

        self._consecutive_failures = 0
        return self._activate_fallback(token)

    def _activate_fallback(self, token: CredentialToken) -> RotationResult:
        now = self._scheduler.time()
        try:
            fallback = self._fallback_issuer(token, now)
        except Exception as e:
            raise RotationFailedError(f"Fallback credential could not be issued: {e}") from e

        self.metrics.fallback_activations += 1
        self._current_token = fallback
        logger.error(
            f"Rotation attempts exhausted, using fallback credential until "
            f"{fallback.expires_at.isoformat()}",
            extra={"instance_id": self.instance_id},
        )
        return RotationResult(success=True, token=fallback, fallback=True)

    def _issue_fallback_token(self, token: CredentialToken, now: float) -> CredentialToken:
        lifetime = self.settings.fallback_lifetime or max(token.lifetime / 2, 1.0)
        return CredentialToken(
            access_secret=f"fallback_{secrets.token_urlsafe(24)}",
            issued_at=from_epoch(now),
            expires_at=from_epoch(now + lifetime),
            refresh_secret=token.refresh_secret,
            kind="fallback",
            scope=token.scope,
            fallback=True,
        )

    # =========================================================================
    # Monitoring loop
    # =========================================================================

    def _schedule_check(self, delay: float) -> None:
        self._timer = self._scheduler.call_later(delay, self._check)

    async def _check(self) -> None:
        self._timer = None
        generation = self._generation
        delay = self.settings.rotation_delay

        try:
            token = await self._resolve_token()
            if token is not None:
                if self.should_rotate(token):
                    result = await self.rotate_token(token)
                    if result.token is not None:
                        token = result.token
                delay = self.next_check_delay(token)
        except Exception as e:
            logger.warning(f"Rotation check failed: {e}", extra={"instance_id": self.instance_id})

        if self._active and generation == self._generation and self._timer is None:
            self._schedule_check(delay)

    async def _resolve_token(self) -> Optional[CredentialToken]:
        session = await self._authority.get_current_session()
        token = session.token if session is not None else None
        local = self._current_token
        if local is not None and (token is None or local.expires_at > token.expires_at):
            return local
        return token

    # =========================================================================
    # Reporting
    # =========================================================================

    def get_metrics(self) -> dict:
        return self.metrics.to_dict()

    def reset_metrics(self) -> None:
        self.metrics = RotationMetrics(strategy=strategy_name(self._strategy))

    def get_status(self) -> dict:
        return {
            "instance_id": self.instance_id,
            "active": self._active,
            "strategy": self.metrics.strategy,
            "monitoring": self._active and self._monitor,
            "consecutive_failures": self._consecutive_failures,
            "last_rotation_time": self.metrics.last_rotation_time,
            "next_check_at": self._timer.when if self._timer is not None else None,
            "current_token": self._current_token.masked() if self._current_token else None,
        }

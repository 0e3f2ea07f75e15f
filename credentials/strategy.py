"""
Rotation strategies.

A strategy answers two questions about a credential: should it be rotated
now, and how long until it is worth asking again. Custom strategies only
need the same two methods.

Built-in policies:
- eager:    rotate within 2x the buffer of expiry, recheck every 0.2s
- lazy:     rotate within half the buffer of expiry, recheck every 2s
- adaptive: rotate within the buffer, or once 75% of the lifetime has
            passed; recheck fast when close to expiry
"""

import time
from typing import Callable, Protocol

from core.errors import ValidationError
from credentials.tokens import CredentialToken

Clock = Callable[[], float]


class RotationStrategy(Protocol):

    def should_rotate(self, token: CredentialToken) -> bool:
        ...

    def rotation_urgency(self, token: CredentialToken) -> float:
        """Seconds until the next rotation check."""
        ...


class _ClockedStrategy:
    name = "base"

    def __init__(self, rotation_buffer: float, check_interval: float, clock: Clock = time.time):
        self.rotation_buffer = rotation_buffer
        self.check_interval = check_interval
        self._clock = clock

    def rotation_urgency(self, token: CredentialToken) -> float:
        return self.check_interval

    def __repr__(self) -> str:
        return f"{type(self).__name__}(buffer={self.rotation_buffer}, interval={self.check_interval})"


class EagerStrategy(_ClockedStrategy):
    """Rotate early, well before expiry."""
    name = "eager"

    def __init__(self, rotation_buffer: float = 300.0, check_interval: float = 0.2,
                 clock: Clock = time.time):
        super().__init__(rotation_buffer, check_interval, clock)

    def should_rotate(self, token: CredentialToken) -> bool:
        return token.remaining(self._clock()) <= self.rotation_buffer * 2


class LazyStrategy(_ClockedStrategy):
    """Rotate as late as is safe."""
    name = "lazy"

    def __init__(self, rotation_buffer: float = 300.0, check_interval: float = 2.0,
                 clock: Clock = time.time):
        super().__init__(rotation_buffer, check_interval, clock)

    def should_rotate(self, token: CredentialToken) -> bool:
        return token.remaining(self._clock()) <= self.rotation_buffer / 2


class AdaptiveStrategy(_ClockedStrategy):
    """Rotate inside the buffer, or once the token has aged past a share of its lifetime."""
    name = "adaptive"

    def __init__(self, rotation_buffer: float = 300.0, check_interval: float = 1.0,
                 urgent_interval: float = 0.5, age_threshold: float = 0.75,
                 clock: Clock = time.time):
        super().__init__(rotation_buffer, check_interval, clock)
        self.urgent_interval = urgent_interval
        self.age_threshold = age_threshold

    def should_rotate(self, token: CredentialToken) -> bool:
        now = self._clock()
        if token.remaining(now) <= self.rotation_buffer:
            return True
        return token.age(now) > token.lifetime * self.age_threshold

    def rotation_urgency(self, token: CredentialToken) -> float:
        if token.remaining(self._clock()) < self.rotation_buffer:
            return self.urgent_interval
        return self.check_interval


STRATEGIES = {
    EagerStrategy.name: EagerStrategy,
    LazyStrategy.name: LazyStrategy,
    AdaptiveStrategy.name: AdaptiveStrategy,
}


def get_strategy(name: str, settings=None, clock: Clock = time.time) -> RotationStrategy:
    """
    Build a built-in strategy from RotationSettings.

    Args:
        name: "eager", "lazy" or "adaptive"
        settings: Optional RotationSettings (defaults used otherwise)
        clock: Epoch-seconds clock

    Raises:
        ValidationError: Unknown strategy name
    """
    if name not in STRATEGIES:
        raise ValidationError(
            f"Unknown rotation strategy '{name}' (expected one of {', '.join(sorted(STRATEGIES))})"
        )

    if settings is None:
        from config.settings import RotationSettings
        settings = RotationSettings()

    if name == EagerStrategy.name:
        return EagerStrategy(settings.rotation_buffer, settings.eager_check_interval, clock)
    if name == LazyStrategy.name:
        return LazyStrategy(settings.rotation_buffer, settings.lazy_check_interval, clock)
    return AdaptiveStrategy(
        settings.rotation_buffer,
        check_interval=settings.rotation_delay,
        urgent_interval=settings.urgent_check_interval,
        age_threshold=settings.adaptive_age_threshold,
        clock=clock,
    )


def strategy_name(strategy: RotationStrategy) -> str:
    return getattr(strategy, "name", None) or type(strategy).__name__

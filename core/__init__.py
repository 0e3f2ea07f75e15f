"""
Core shared utilities for the credential lifecycle packages.

Used across:
- credentials/ (token rotation and refresh)
- sessions/ (session timeout)
- mfa/ (multi-factor authentication)
"""

from .errors import (
    LifecycleError,
    ValidationError,
    RateLimitedError,
    NoActiveEnrollmentError,
    CircuitOpenError,
    RotationFailedError,
    AlreadyActiveError,
    NotActiveError,
)

from .scheduling import LoopScheduler, VirtualScheduler, TimerHandle
from .sync_channel import (
    InMemorySyncBus,
    RedisSyncChannel,
    SyncMessage,
    build_sync_channel,
    TOKEN_REFRESH_TOPIC,
    SESSION_TIMEOUT_TOPIC,
)

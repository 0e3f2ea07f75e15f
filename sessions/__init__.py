"""Session idle and absolute timeouts."""

from .timeout import (
    SessionState,
    SessionStatus,
    SessionTimeoutEvents,
    SessionTimeoutManager,
)

"""Access credential rotation and refresh."""

from .tokens import CredentialToken, Session
from .strategy import AdaptiveStrategy, EagerStrategy, LazyStrategy, get_strategy
from .rotation import RotationMetrics, RotationResult, TokenRotationManager
from .refresh import RefreshOutcome, TokenRefreshManager

"""Model classification and provider fallback."""

from .executor import Attempt, FallbackExecutor, FallbackPolicy, StreamSession
from .router import ModelChoice, ModelRouter, RoutingContext

__all__ = [
    "Attempt",
    "FallbackExecutor",
    "FallbackPolicy",
    "ModelChoice",
    "ModelRouter",
    "RoutingContext",
    "StreamSession",
]

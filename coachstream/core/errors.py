"""
Coachstream Error Taxonomy

Only errors flagged user_visible ever reach the client, either as an HTTP
error or as an `error` stream event carrying the trace id. Everything else is
recovered where it happens and logged.
"""

from typing import Optional


class CoachEngineError(Exception):
    """Base class for all engine errors."""
    code = "engine_error"
    user_visible = False
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class AuthError(CoachEngineError):
    """Missing or invalid bearer token."""
    code = "auth_error"
    user_visible = True
    status_code = 401


class ValidationError(CoachEngineError):
    """Malformed request (missing message, wrong Accept header)."""
    code = "validation_error"
    user_visible = True
    status_code = 400


class ProviderUnavailable(CoachEngineError):
    """A single provider could not serve the request; triggers fallback."""
    code = "provider_unavailable"

    def __init__(self, provider: str, status: Optional[int] = None, message: str = ""):
        detail = message or (f"HTTP {status}" if status else "unavailable")
        super().__init__(f"{provider}: {detail}")
        self.provider = provider
        self.status = status

    @property
    def retryable(self) -> bool:
        """429, 402, 5xx and transport failures are worth trying elsewhere."""
        if self.status is None:
            return True
        return self.status in (402, 429) or self.status >= 500


class ProviderChainExhausted(CoachEngineError):
    """Every provider in the fallback chain failed."""
    code = "provider_chain_exhausted"
    user_visible = True
    status_code = 503

    def __init__(self, message: str = "All AI providers failed", attempts=None):
        super().__init__(message)
        self.attempts = attempts or []


class StreamReadError(CoachEngineError):
    """The upstream stream broke after it was opened."""
    code = "stream_read_error"
    user_visible = True
    status_code = 502


class PersistenceWarning(CoachEngineError):
    """Trace or conversation write failed; never fatal to the turn."""
    code = "persistence_warning"


class ParseError(CoachEngineError):
    """Malformed stream record or model output."""
    code = "parse_error"


class BackgroundTaskError(CoachEngineError):
    """A detached post-turn job failed; logged only."""
    code = "background_task_error"


class ConfigurationError(CoachEngineError):
    """No provider credentials or an unusable configuration."""
    code = "configuration_error"
    user_visible = True
    status_code = 500

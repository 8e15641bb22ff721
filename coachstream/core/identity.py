"""
Bearer token verification.

The identity provider is an external collaborator; the engine only needs
`verify(token) -> user_id`. StaticTokenVerifier backs it with the
auth.tokens map from config.
"""

import hmac
import logging
from typing import Dict, Optional

from .errors import AuthError

logger = logging.getLogger(__name__)


def parse_bearer(authorization: Optional[str]) -> str:
    """Extract the token from an `Authorization: Bearer <token>` header."""
    if not authorization:
        raise AuthError("Missing Authorization header")

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthError("Invalid Authorization header format. Use: Bearer <token>")
    return parts[1]


class TokenVerifier:
    """Resolves a bearer token to a user id."""

    def verify(self, token: str) -> str:
        raise NotImplementedError


class StaticTokenVerifier(TokenVerifier):
    """Token -> user id lookup from a fixed mapping."""

    def __init__(self, tokens: Dict[str, str]):
        self._tokens = dict(tokens)

    def verify(self, token: str) -> str:
        for known, user_id in self._tokens.items():
            if hmac.compare_digest(known, token):
                return user_id
        logger.warning("[AUTH] Rejected unknown token")
        raise AuthError("Invalid token")

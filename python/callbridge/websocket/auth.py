"""
Relay authentication.

The bridge signs a short-lived JWT and presents it as a bearer token when it
opens a relay connection, so the receiving CRM server can tell it apart from
browser subscribers.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import jwt

logger = logging.getLogger("callbridge.relay_auth")

DEFAULT_PERMISSIONS = ["publish_call_events"]


class RelayAuth:
    """Issue and cache bearer tokens for outbound relay connections."""

    def __init__(
        self,
        secret_key: str,
        client_id: str,
        algorithm: str = "HS256",
        token_ttl_hours: float = 1.0,
    ):
        if not secret_key:
            raise ValueError("secret_key is required for relay auth")

        self.secret_key = secret_key
        self.client_id = client_id
        self.algorithm = algorithm
        self.token_ttl = timedelta(hours=token_ttl_hours)

        self._cached_token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None

    def issue_token(self, permissions: Optional[List[str]] = None) -> str:
        """Sign a fresh token and cache it until expiry."""
        now = datetime.utcnow()
        expires_at = now + self.token_ttl

        claims = {
            "client_id": self.client_id,
            "permissions": permissions or DEFAULT_PERMISSIONS,
            "iat": now,
            "nbf": now,
            "exp": expires_at,
        }
        token = jwt.encode(claims, self.secret_key, algorithm=self.algorithm)

        self._cached_token = token
        self._token_expires_at = expires_at
        logger.debug(f"Issued relay token for {self.client_id}, expires at {expires_at}")
        return token

    def current_token(self, refresh_margin_minutes: float = 5.0) -> str:
        """Cached token, re-issued when it is within the margin of expiring."""
        margin = timedelta(minutes=refresh_margin_minutes)
        if (
            self._cached_token
            and self._token_expires_at
            and datetime.utcnow() + margin < self._token_expires_at
        ):
            return self._cached_token
        return self.issue_token()

    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.current_token()}"}

    def verify(self, token: str) -> Dict:
        """Decode a token signed with the same secret (used by tests and peers)."""
        return jwt.decode(token, self.secret_key, algorithms=[self.algorithm])

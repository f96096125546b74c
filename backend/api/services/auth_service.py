"""JWT operator authentication.

The main site issues the auth cookie; this service only verifies it and
extracts the operator e-mail. create_access_token exists for local
development and tests.
"""

import logging
from datetime import UTC, datetime, timedelta

import jwt

from shared.errors import AuthorizationDenied, AuthRequired

logger = logging.getLogger(__name__)


class AuthService:
    """Verify operator JWTs and apply the admin allow-list."""

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        admin_emails: set[str] | None = None,
    ):
        if not secret_key:
            raise ValueError("JWT secret key cannot be empty")

        self.secret_key = secret_key
        self.algorithm = algorithm
        self.admin_emails = {e.lower() for e in (admin_emails or set())}

    def create_access_token(self, email: str, expire_days: int = 1) -> str:
        """Create a JWT for an operator e-mail"""
        now = datetime.now(UTC)
        payload = {"sub": email, "exp": now + timedelta(days=expire_days), "iat": now}
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def verify_token(self, token: str) -> dict | None:
        """Verify a JWT token and return the payload if valid"""
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
            if not payload.get("sub"):
                logger.warning("Token missing sub")
                return None
            return payload

        except jwt.ExpiredSignatureError:
            logger.warning("Token expired")
            return None
        except jwt.InvalidTokenError as e:
            logger.warning(f"Invalid token: {e}")
            return None

    def operator_email(self, token: str | None) -> str:
        """Return the operator e-mail for an admin token.

        Raises AuthRequired (no/invalid token) or AuthorizationDenied
        (valid token, not on the allow-list).
        """
        if not token:
            raise AuthRequired("Not logged in")
        payload = self.verify_token(token)
        if payload is None:
            raise AuthRequired("Invalid or expired token")

        email = str(payload["sub"]).strip().lower()
        if email not in self.admin_emails:
            logger.warning(f"Nightbot admin access denied for {email}")
            raise AuthorizationDenied("Admin access required")
        return email

"""
JWT token service for the admin API.
"""
from datetime import datetime, timedelta, timezone
from jose import JWTError, jwt
from commerce_core.config import Settings, settings as default_settings


class JWTService:
    """Creates and verifies admin bearer tokens."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or default_settings

    def create_token(self, subject: str, role: str, email: str | None = None) -> str:
        """
        Create a signed token.

        Args:
            subject: Operator id
            role: "admin" for full plugin control
            email: Optional operator email

        Returns:
            Encoded JWT token string
        """
        expires = datetime.now(timezone.utc) + timedelta(minutes=self.settings.JWT_EXPIRATION_MINUTES)

        payload = {
            "sub": subject,
            "role": role,
            "email": email,
            "exp": expires
        }

        return jwt.encode(payload, self.settings.JWT_SECRET_KEY, algorithm=self.settings.JWT_ALGORITHM)

    def verify_token(self, token: str) -> dict | None:
        """Decoded payload, or None if the token is invalid or expired."""
        try:
            return jwt.decode(
                token,
                self.settings.JWT_SECRET_KEY,
                algorithms=[self.settings.JWT_ALGORITHM]
            )
        except JWTError:
            return None

"""Bearer token handling for job owners"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from uuid import UUID
from jose import JWTError, jwt

from book_detection.config import settings

TOKEN_ISSUER = "book-detection-api"
ACCESS_TOKEN_TYPE = "access"


class AuthService:
    """
    Issues and verifies the JWTs that identify job owners.

    The ``sub`` claim carries the owner UUID. Tokens are signed with
    ``jwt_secret`` when it is configured, otherwise with ``secret_key``.
    """

    @staticmethod
    def _signing_key() -> str:
        return settings.jwt_secret or settings.secret_key

    @staticmethod
    def create_access_token(owner_id: UUID, expires_delta: Optional[timedelta] = None) -> str:
        """
        Create an access token for an owner

        Args:
            owner_id: Owner the token identifies
            expires_delta: Lifetime (defaults to jwt_expiration_hours)

        Returns:
            Encoded JWT
        """
        issued_at = datetime.utcnow()
        lifetime = expires_delta or timedelta(hours=settings.jwt_expiration_hours)
        claims = {
            "sub": str(owner_id),
            "iss": TOKEN_ISSUER,
            "type": ACCESS_TOKEN_TYPE,
            "iat": issued_at,
            "exp": issued_at + lifetime,
        }
        return jwt.encode(claims, AuthService._signing_key(), algorithm=settings.jwt_algorithm)

    @staticmethod
    def decode_token(token: str) -> Optional[Dict[str, Any]]:
        """Verify signature, expiry and issuer; returns the claims or None"""
        try:
            return jwt.decode(
                token,
                AuthService._signing_key(),
                algorithms=[settings.jwt_algorithm],
                issuer=TOKEN_ISSUER,
            )
        except JWTError:
            return None

    @staticmethod
    def owner_id_from_token(token: str) -> Optional[UUID]:
        """Owner UUID of a valid access token, or None"""
        claims = AuthService.decode_token(token)
        if not claims or claims.get("type") != ACCESS_TOKEN_TYPE:
            return None

        try:
            return UUID(claims.get("sub") or "")
        except ValueError:
            return None

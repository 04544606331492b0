"""
JWT verification for identity provider access tokens.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from jose import JWTError, jwt


@dataclass
class TokenPayload:
    """Access token payload structure."""

    sub: str  # Subject (user ID)
    exp: datetime  # Expiration time
    iat: datetime  # Issued at
    email: str | None = None
    role: str | None = None


class TokenService:
    """Validates access tokens issued by the hosted identity provider."""

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        audience: str | None = None,
        access_token_expire_minutes: int = 60,
    ):
        """
        Initialize the token service.

        Args:
            secret_key: Shared JWT secret of the identity provider
            algorithm: JWT algorithm (default: HS256)
            audience: Expected ``aud`` claim; not checked when None
            access_token_expire_minutes: Lifetime of tokens minted by
                create_access_token
        """
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._audience = audience
        self._access_token_expire_minutes = access_token_expire_minutes

    def create_access_token(
        self,
        user_id: str,
        email: str | None = None,
        role: str | None = "authenticated",
    ) -> str:
        """
        Create an access token shaped like the identity provider's.

        Used by internal tooling and tests; the app itself only verifies.

        Args:
            user_id: User ID to encode in the token
            email: Optional email to include
            role: Optional role to include

        Returns:
            Encoded JWT access token
        """
        now = datetime.now(UTC)
        expire = now + timedelta(minutes=self._access_token_expire_minutes)

        payload = {
            "sub": user_id,
            "exp": expire,
            "iat": now,
        }

        if self._audience:
            payload["aud"] = self._audience
        if email:
            payload["email"] = email
        if role:
            payload["role"] = role

        return jwt.encode(payload, self._secret_key, algorithm=self._algorithm)

    def decode_token(self, token: str) -> TokenPayload | None:
        """
        Decode and validate an access token.

        Args:
            token: JWT token to decode

        Returns:
            TokenPayload if valid, None if invalid or expired
        """
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                audience=self._audience,
                options={"verify_aud": self._audience is not None},
            )

            # Validate required fields exist before accessing them
            required_fields = ["sub", "exp"]
            for field in required_fields:
                if not payload.get(field):
                    raise JWTError(f"Missing required field: {field}")

            return TokenPayload(
                sub=payload.get("sub"),
                exp=datetime.fromtimestamp(payload.get("exp"), tz=UTC),
                iat=datetime.fromtimestamp(payload.get("iat", 0), tz=UTC),
                email=payload.get("email"),
                role=payload.get("role"),
            )
        except JWTError:
            return None

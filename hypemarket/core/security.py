from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID
from jose import ExpiredSignatureError, JWTError, jwt
from hypemarket.config import settings
from hypemarket.core.exceptions import InvalidCredentialException, UnauthenticatedException
from hypemarket.core.permissions import Role
from hypemarket.utils.helpers import utcnow
from hypemarket.utils.logger import logger


@dataclass(frozen=True)
class AuthContext:
    """Caller identity decoded from a bearer credential."""

    id: Optional[UUID]
    role: Optional[Role]
    email: Optional[str] = None
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @classmethod
    def anonymous(cls) -> "AuthContext":
        return cls(id=None, role=None)

    @property
    def is_anonymous(self) -> bool:
        return self.id is None


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    now = utcnow()
    if expires_delta:
        expire = now + expires_delta
    else:
        expire = now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.setdefault("iss", settings.JWT_ISSUER)
    to_encode.setdefault("aud", settings.JWT_AUDIENCE)
    to_encode.update({"iat": now, "exp": expire, "type": "access"})
    if isinstance(to_encode.get("sub"), UUID):
        to_encode["sub"] = str(to_encode["sub"])
    if isinstance(to_encode.get("role"), Role):
        to_encode["role"] = to_encode["role"].value
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def _timestamp(value) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def decode_access_token(token: str) -> dict:
    if not token or not token.strip():
        raise UnauthenticatedException("Access denied. No token provided.")

    try:
        jwt.get_unverified_header(token)
        jwt.get_unverified_claims(token)
    except JWTError:
        raise UnauthenticatedException("Malformed token.")

    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
        )
    except ExpiredSignatureError:
        raise UnauthenticatedException("Token expired. Please login again.")
    except JWTError as e:
        logger.warning(f"Rejected bearer credential: {e}")
        raise InvalidCredentialException("Invalid token.")

    if payload.get("type") != "access":
        raise InvalidCredentialException("Invalid token type.")
    return payload


def resolve_auth_context(token: Optional[str]) -> AuthContext:
    payload = decode_access_token(token)

    subject = payload.get("sub") or payload.get("userId")
    if subject is None:
        raise InvalidCredentialException("Token has no subject.")
    try:
        user_id = UUID(str(subject))
    except ValueError:
        raise InvalidCredentialException("Token subject is not a valid identifier.")

    try:
        role = Role(payload.get("role", Role.USER.value))
    except ValueError:
        # Unknown token roles are read as plain users (tier 1), the lowest grantable role
        role = Role.USER

    return AuthContext(
        id=user_id,
        role=role,
        email=payload.get("email"),
        issued_at=_timestamp(payload.get("iat")),
        expires_at=_timestamp(payload.get("exp")),
    )


def resolve_optional_auth_context(token: Optional[str]) -> AuthContext:
    if not token:
        return AuthContext.anonymous()
    try:
        return resolve_auth_context(token)
    except (UnauthenticatedException, InvalidCredentialException):
        return AuthContext.anonymous()

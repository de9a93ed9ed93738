from datetime import datetime, timedelta, timezone
from uuid import uuid4

import bcrypt
from jose import JWTError, jwt

from app.core.config import settings

ALGORITHM = "HS256"

CUSTOMER_ACCESS_TOKEN = "customer_access"
ADMIN_ACCESS_TOKEN = "admin_access"


class TokenValidationError(ValueError):
    pass


def hash_password(password: str) -> str:
    # bcrypt hard limit is 72 bytes. We encode as utf-8.
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))


def create_token(subject: str, expires_delta: timedelta, token_type: str) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "type": token_type,
        "jti": str(uuid4()),
        "iat": int(now.timestamp()),
        "exp": int((now + expires_delta).timestamp()),
    }
    return jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)


def decode_token(token: str, *, expected_type: str | None = None) -> dict:
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError as exc:
        raise TokenValidationError("Invalid token") from exc

    if not payload.get("sub"):
        raise TokenValidationError("Invalid token subject")

    if expected_type and payload.get("type") != expected_type:
        raise TokenValidationError("Invalid token type")

    return payload


def create_customer_access_token(customer_id: str) -> str:
    return create_token(
        subject=customer_id,
        expires_delta=timedelta(minutes=settings.access_token_expire_minutes),
        token_type=CUSTOMER_ACCESS_TOKEN,
    )


def create_admin_access_token(admin_user_id: str) -> str:
    return create_token(
        subject=admin_user_id,
        expires_delta=timedelta(minutes=settings.access_token_expire_minutes),
        token_type=ADMIN_ACCESS_TOKEN,
    )

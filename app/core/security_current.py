from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.core.deps import get_db
from app.core.security import (
    ADMIN_ACCESS_TOKEN,
    CUSTOMER_ACCESS_TOKEN,
    TokenValidationError,
    decode_token,
)
from app.models.user import AdminUser

bearer_scheme = HTTPBearer(auto_error=False)


def get_current_admin(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> AdminUser:
    if credentials is None:
        raise HTTPException(
            status_code=401,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        payload = decode_token(credentials.credentials, expected_type=ADMIN_ACCESS_TOKEN)
    except TokenValidationError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    admin = db.get(AdminUser, payload.get("sub"))
    if not admin or not admin.is_active:
        raise HTTPException(status_code=401, detail="Admin user not found")
    return admin


def get_optional_customer_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str | None:
    """Customer id from a storefront bearer token, or None for guests.

    Storefront reads never fail on a bad token; they fall back to guest
    pricing instead.
    """
    if credentials is None:
        return None
    try:
        payload = decode_token(credentials.credentials, expected_type=CUSTOMER_ACCESS_TOKEN)
    except TokenValidationError:
        return None
    return str(payload["sub"])

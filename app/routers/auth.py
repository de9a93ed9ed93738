from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.api_docs import error_responses
from app.core.config import settings
from app.core.deps import get_db
from app.core.rate_limit import LoginThrottle
from app.core.security import (
    create_admin_access_token,
    create_customer_access_token,
    verify_password,
)
from app.models.customer import Customer
from app.models.user import AdminUser
from app.schemas.auth import LoginIn, TokenOut

router = APIRouter(prefix="/auth", tags=["auth"])

login_rate_limiter = LoginThrottle(
    max_attempts=settings.auth_rate_limit_max_attempts,
    window_seconds=settings.auth_rate_limit_window_seconds,
    lock_seconds=settings.auth_rate_limit_lock_seconds,
)

INVALID_CREDENTIALS = "Invalid credentials"


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _enforce_rate_limit(scope: str, email: str, client_ip: str) -> str:
    key = LoginThrottle.key_for(scope, email, client_ip)
    retry_after = login_rate_limiter.retry_after(key)
    if retry_after:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many login attempts. Try again later.",
            headers={"Retry-After": str(retry_after)},
        )
    return key


def _password_matches(hashed_password: str | None, password: str) -> bool:
    if not hashed_password:
        return False
    return verify_password(password, hashed_password)


@router.post(
    "/customer/login",
    response_model=TokenOut,
    summary="Storefront customer login",
    responses=error_responses(401, 422, 429, 500),
)
def customer_login(payload: LoginIn, request: Request, db: Session = Depends(get_db)):
    key = _enforce_rate_limit("customer", payload.email, _client_ip(request))
    customer = db.execute(
        select(Customer).where(func.lower(Customer.email) == payload.email)
    ).scalar_one_or_none()
    if not customer or not _password_matches(customer.hashed_password, payload.password):
        login_rate_limiter.record_failure(key)
        raise HTTPException(status_code=401, detail=INVALID_CREDENTIALS)

    login_rate_limiter.reset(key)
    return TokenOut(access_token=create_customer_access_token(customer.id))


@router.post(
    "/admin/login",
    response_model=TokenOut,
    summary="Admin dashboard login",
    responses=error_responses(401, 422, 429, 500),
)
def admin_login(payload: LoginIn, request: Request, db: Session = Depends(get_db)):
    key = _enforce_rate_limit("admin", payload.email, _client_ip(request))
    admin = db.execute(
        select(AdminUser).where(func.lower(AdminUser.email) == payload.email)
    ).scalar_one_or_none()
    if (
        not admin
        or not admin.is_active
        or not _password_matches(admin.hashed_password, payload.password)
    ):
        login_rate_limiter.record_failure(key)
        raise HTTPException(status_code=401, detail=INVALID_CREDENTIALS)

    login_rate_limiter.reset(key)
    return TokenOut(access_token=create_admin_access_token(admin.id))

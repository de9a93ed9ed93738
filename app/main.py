from contextlib import asynccontextmanager

from sqlalchemy import text

from app.core.observability import (
    http_exception_handler,
    log_event,
    request_logging_middleware,
    setup_observability,
    unhandled_exception_handler,
    validation_exception_handler,
)
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings
from app.db.session import SessionLocal, engine
from app.routers import auth, customer_roles, storefront
from app.services.customer_roles import CustomerRoleConfig, CustomerRolesService
from app.services.customer_store import SqlAlchemyCustomerStore


def initialize_customer_role_groups(session_factory=SessionLocal) -> None:
    db = session_factory()
    try:
        service = CustomerRolesService(
            SqlAlchemyCustomerStore(db),
            CustomerRoleConfig.from_settings(settings),
        )
        results = service.initialize_groups()
    finally:
        db.close()
    log_event(
        "customer_role_groups_startup",
        ok=sorted(role.value for role, ok in results.items() if ok),
        failed=sorted(role.value for role, ok in results.items() if not ok),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.customer_roles_init_on_startup:
        session_factory = getattr(app.state, "session_factory", SessionLocal)
        initialize_customer_role_groups(session_factory)
    yield


setup_observability()

app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description=(
        "Pricing-tier backend for the storefront and admin dashboard.\n\n"
        "Customers are mapped to one of the `retail`, `bulk`, `vip` or `supplier` "
        "pricing roles through customer-group membership."
    ),
    lifespan=lifespan,
    swagger_ui_parameters={
        "persistAuthorization": True,
        "displayRequestDuration": True,
        "defaultModelsExpandDepth": 1,
    },
    openapi_tags=[
        {"name": "health", "description": "Service status and quick links."},
        {"name": "auth", "description": "Customer and admin token login."},
        {"name": "storefront", "description": "Pricing role of the current storefront visitor."},
        {"name": "customer-roles", "description": "Admin pricing role management."},
    ],
)

app.middleware("http")(request_logging_middleware)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

cors_origins = settings.cors_origins or ["http://localhost:3000"]
allow_all_origins = "*" in cors_origins
env_value = settings.env.lower().strip()
allow_origin_regex = settings.cors_origin_regex

if (
    not allow_origin_regex
    and env_value in {"dev", "development", "staging", "stage"}
):
    # Storefront and admin dev servers run on dynamic localhost ports.
    allow_origin_regex = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if allow_all_origins else cors_origins,
    allow_origin_regex=allow_origin_regex,
    allow_credentials=not allow_all_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router)
app.include_router(storefront.router)
app.include_router(customer_roles.router)


@app.get("/", tags=["health"])
def root():
    return {
        "app": settings.app_name,
        "docs": "/docs",
        "health": "/health",
        "ready": "/ready",
    }


@app.get("/health", tags=["health"])
def health():
    return {"ok": True}


@app.get("/ready", tags=["health"])
def ready():
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        return {"ok": False}
    return {"ok": True}

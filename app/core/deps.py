from collections.abc import Generator

from fastapi import Depends
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.session import SessionLocal
from app.services.customer_roles import CustomerRoleConfig, CustomerRolesService
from app.services.customer_store import SqlAlchemyCustomerStore


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_customer_roles_service(db: Session = Depends(get_db)) -> CustomerRolesService:
    return CustomerRolesService(
        SqlAlchemyCustomerStore(db),
        CustomerRoleConfig.from_settings(settings),
    )

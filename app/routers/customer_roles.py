import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.api_docs import error_responses
from app.core.deps import get_customer_roles_service, get_db
from app.core.observability import log_event
from app.core.security_current import get_current_admin
from app.models.user import AdminUser
from app.schemas.customer_role import (
    CustomerRoleAssignIn,
    CustomerRoleAssignOut,
    CustomerRoleOut,
    RoleGroupInitListOut,
    RoleGroupInitOut,
    RoleListOut,
    role_info_out,
)
from app.services.audit_service import log_audit_event
from app.services.customer_roles import (
    CustomerRolesService,
    InvalidRoleError,
    RoleAssignmentError,
    parse_role,
)
from app.services.customer_store import CustomerNotFoundError

router = APIRouter(prefix="/admin", tags=["customer-roles"])


@router.get(
    "/customer-roles",
    response_model=RoleListOut,
    summary="List pricing roles and their customer groups",
    responses=error_responses(401, 500),
)
def list_customer_roles(
    service: CustomerRolesService = Depends(get_customer_roles_service),
    _admin: AdminUser = Depends(get_current_admin),
):
    return RoleListOut(items=[role_info_out(info) for info in service.list_roles()])


@router.post(
    "/customer-roles/initialize",
    response_model=RoleGroupInitListOut,
    summary="Create any missing pricing role groups",
    responses=error_responses(401, 500),
)
def initialize_customer_role_groups(
    service: CustomerRolesService = Depends(get_customer_roles_service),
    _admin: AdminUser = Depends(get_current_admin),
):
    results = service.initialize_groups()
    return RoleGroupInitListOut(
        items=[
            RoleGroupInitOut(role=role, group_id=service.group_id_for_role(role), ok=ok)
            for role, ok in results.items()
        ]
    )


@router.get(
    "/customers/{customer_id}/role",
    response_model=CustomerRoleOut,
    summary="Get a customer's pricing role",
    responses=error_responses(401, 404, 500),
)
def get_customer_role(
    customer_id: str,
    service: CustomerRolesService = Depends(get_customer_roles_service),
    _admin: AdminUser = Depends(get_current_admin),
):
    try:
        role = service.resolve_role(customer_id)
    except CustomerNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Customer not found") from exc
    return CustomerRoleOut(
        customer_id=customer_id,
        role=role,
        role_info=role_info_out(service.describe_role(role)),
    )


@router.post(
    "/customers/{customer_id}/role",
    response_model=CustomerRoleAssignOut,
    summary="Assign a pricing role to a customer",
    responses=error_responses(400, 401, 404, 422, 500),
)
def assign_customer_role(
    customer_id: str,
    payload: CustomerRoleAssignIn,
    db: Session = Depends(get_db),
    service: CustomerRolesService = Depends(get_customer_roles_service),
    admin: AdminUser = Depends(get_current_admin),
):
    role = parse_role(payload.role)
    if role is None:
        raise HTTPException(status_code=400, detail=str(InvalidRoleError(payload.role)))

    # Only recorded in the audit trail.
    previous_role = service.resolve_role_or_default(customer_id)
    try:
        service.assign_role(customer_id, role)
    except CustomerNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Customer not found") from exc
    except InvalidRoleError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except RoleAssignmentError as exc:
        raise HTTPException(status_code=500, detail="Failed to assign customer role") from exc

    try:
        log_audit_event(
            db,
            actor_user_id=admin.id,
            action="customer.role.assign",
            target_type="customer",
            target_id=customer_id,
            metadata_json={"previous_role": previous_role.value, "role": role.value},
        )
    except SQLAlchemyError as exc:
        # Role is already applied.
        db.rollback()
        log_event(
            "customer_role_audit_failed",
            level=logging.ERROR,
            customer_id=customer_id,
            role=role.value,
            error=str(exc),
        )
    return CustomerRoleAssignOut(
        customer_id=customer_id,
        previous_role=previous_role,
        role=role,
        role_info=role_info_out(service.describe_role(role)),
    )

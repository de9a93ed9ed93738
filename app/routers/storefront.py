from fastapi import APIRouter, Depends

from app.core.api_docs import error_responses
from app.core.deps import get_customer_roles_service
from app.core.security_current import get_optional_customer_id
from app.schemas.customer_role import RoleListOut, StoreCustomerRoleOut, role_info_out
from app.services.customer_roles import DEFAULT_CUSTOMER_ROLE, CustomerRolesService

router = APIRouter(prefix="/store", tags=["storefront"])


@router.get(
    "/customer/role",
    response_model=StoreCustomerRoleOut,
    summary="Pricing role of the current storefront visitor",
    description=(
        "Guests and visitors with an invalid token get retail pricing. "
        "A failure while resolving a signed-in customer's role also falls back "
        "to retail so price display never blocks the page."
    ),
    responses=error_responses(500),
)
def get_store_customer_role(
    customer_id: str | None = Depends(get_optional_customer_id),
    service: CustomerRolesService = Depends(get_customer_roles_service),
):
    if customer_id is None:
        return StoreCustomerRoleOut(
            authenticated=False,
            customer_id=None,
            role=DEFAULT_CUSTOMER_ROLE,
            role_info=role_info_out(service.describe_role(DEFAULT_CUSTOMER_ROLE)),
        )

    role = service.resolve_role_or_default(customer_id)
    return StoreCustomerRoleOut(
        authenticated=True,
        customer_id=customer_id,
        role=role,
        role_info=role_info_out(service.describe_role(role)),
    )


@router.get(
    "/customer-roles",
    response_model=RoleListOut,
    summary="List pricing roles",
    responses=error_responses(500),
)
def list_store_customer_roles(
    service: CustomerRolesService = Depends(get_customer_roles_service),
):
    return RoleListOut(items=[role_info_out(info) for info in service.list_roles()])

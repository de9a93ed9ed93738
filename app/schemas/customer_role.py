from pydantic import BaseModel, ConfigDict, field_validator

from app.services.customer_roles import CustomerRole, RoleGroupInfo, role_visibility


class RoleInfoOut(BaseModel):
    slug: CustomerRole
    name: str
    description: str
    group_id: str
    can_see_bulk_prices: bool
    can_see_vip_prices: bool


class RoleListOut(BaseModel):
    items: list[RoleInfoOut]


class StoreCustomerRoleOut(BaseModel):
    authenticated: bool
    customer_id: str | None = None
    role: CustomerRole
    role_info: RoleInfoOut

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "authenticated": True,
                "customer_id": "cus_7n2VQ5kR4x9mC3",
                "role": "vip",
                "role_info": {
                    "slug": "vip",
                    "name": "VIP Customers",
                    "description": "VIP customers with premium pricing and benefits",
                    "group_id": "cgrp_vip",
                    "can_see_bulk_prices": True,
                    "can_see_vip_prices": True,
                },
            }
        }
    )


class CustomerRoleOut(BaseModel):
    customer_id: str
    role: CustomerRole
    role_info: RoleInfoOut


class CustomerRoleAssignIn(BaseModel):
    # Validated by the service so unknown values map to a 400, not a 422.
    role: str

    @field_validator("role")
    @classmethod
    def normalize_role(cls, value: str) -> str:
        return value.strip().lower()

    model_config = ConfigDict(json_schema_extra={"example": {"role": "bulk"}})


class CustomerRoleAssignOut(BaseModel):
    customer_id: str
    previous_role: CustomerRole
    role: CustomerRole
    role_info: RoleInfoOut


class RoleGroupInitOut(BaseModel):
    role: CustomerRole
    group_id: str
    ok: bool


class RoleGroupInitListOut(BaseModel):
    items: list[RoleGroupInitOut]


def role_info_out(info: RoleGroupInfo) -> RoleInfoOut:
    visibility = role_visibility(info.role)
    return RoleInfoOut(
        slug=info.role,
        name=info.name,
        description=info.description,
        group_id=info.id,
        can_see_bulk_prices=visibility.can_see_bulk_prices,
        can_see_vip_prices=visibility.can_see_vip_prices,
    )

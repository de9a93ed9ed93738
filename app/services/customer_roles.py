import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from app.core.observability import log_event
from app.services.customer_store import (
    CustomerGroupExistsError,
    CustomerGroupNotFoundError,
    CustomerNotFoundError,
    CustomerStore,
    CustomerStoreError,
    NotGroupMemberError,
)


class CustomerRole(str, Enum):
    RETAIL = "retail"
    BULK = "bulk"
    VIP = "vip"
    SUPPLIER = "supplier"


DEFAULT_CUSTOMER_ROLE = CustomerRole.RETAIL
PRICING_ROLE_METADATA_KEY = "pricing_role"

# Retail is the implicit default and never counts as a positive signal.
ELEVATED_ROLE_PRIORITY: tuple[CustomerRole, ...] = (
    CustomerRole.VIP,
    CustomerRole.BULK,
    CustomerRole.SUPPLIER,
)

_BULK_PRICE_ROLES = frozenset({CustomerRole.BULK, CustomerRole.VIP, CustomerRole.SUPPLIER})
_VIP_PRICE_ROLES = frozenset({CustomerRole.VIP})

_ROLE_NAMES: dict[CustomerRole, tuple[str, str]] = {
    CustomerRole.RETAIL: (
        "Retail Customers",
        "Standard retail customers with public pricing",
    ),
    CustomerRole.BULK: (
        "Bulk Customers",
        "Wholesale/bulk purchase customers with discounted pricing",
    ),
    CustomerRole.VIP: (
        "VIP Customers",
        "VIP customers with premium pricing and benefits",
    ),
    CustomerRole.SUPPLIER: (
        "Suppliers",
        "Supplier accounts with special access",
    ),
}

# Failures the storefront pricing path degrades on instead of failing the request.
STORE_FAILURES = (CustomerStoreError, SQLAlchemyError)


class InvalidRoleError(ValueError):
    def __init__(self, role: Any):
        allowed = ", ".join(r.value for r in CustomerRole)
        super().__init__(f"Invalid role '{role}'. Allowed: {allowed}")
        self.role = role


class RoleAssignmentError(RuntimeError):
    def __init__(self, *, customer_id: str, role: str, step: str, cause: Exception):
        super().__init__(
            f"Failed to assign role '{role}' to customer {customer_id} during {step}: {cause}"
        )
        self.customer_id = customer_id
        self.role = role
        self.step = step


@dataclass(frozen=True)
class RoleGroupInfo:
    id: str
    name: str
    role: CustomerRole
    description: str


@dataclass(frozen=True)
class RoleVisibility:
    can_see_bulk_prices: bool
    can_see_vip_prices: bool


@dataclass(frozen=True)
class CustomerRoleConfig:
    retail_group_id: str = "cgrp_retail"
    bulk_group_id: str = "cgrp_bulk"
    vip_group_id: str = "cgrp_vip"
    supplier_group_id: str = "cgrp_supplier"

    @classmethod
    def from_settings(cls, settings) -> "CustomerRoleConfig":
        return cls(
            retail_group_id=settings.customer_group_retail_id,
            bulk_group_id=settings.customer_group_bulk_id,
            vip_group_id=settings.customer_group_vip_id,
            supplier_group_id=settings.customer_group_supplier_id,
        )

    def group_id(self, role: CustomerRole) -> str:
        return {
            CustomerRole.RETAIL: self.retail_group_id,
            CustomerRole.BULK: self.bulk_group_id,
            CustomerRole.VIP: self.vip_group_id,
            CustomerRole.SUPPLIER: self.supplier_group_id,
        }[role]


def parse_role(value: Any) -> CustomerRole | None:
    if isinstance(value, CustomerRole):
        return value
    if not isinstance(value, str):
        return None
    try:
        return CustomerRole(value.strip().lower())
    except ValueError:
        return None


def role_visibility(role: CustomerRole) -> RoleVisibility:
    return RoleVisibility(
        can_see_bulk_prices=role in _BULK_PRICE_ROLES,
        can_see_vip_prices=role in _VIP_PRICE_ROLES,
    )


class CustomerRolesService:
    """Maps customers to pricing tiers through customer-group membership.

    Group membership is the source of truth. ``metadata.pricing_role`` on the
    customer is a denormalized copy written on every assignment and read only
    when no elevated pricing group matches, so a half-applied assignment heals
    toward the group value on the next read.
    """

    def __init__(self, store: CustomerStore, config: CustomerRoleConfig | None = None):
        self.store = store
        self.config = config or CustomerRoleConfig()
        self._groups: dict[CustomerRole, RoleGroupInfo] = {
            role: RoleGroupInfo(
                id=self.config.group_id(role),
                name=name,
                role=role,
                description=description,
            )
            for role, (name, description) in _ROLE_NAMES.items()
        }

    def initialize_groups(self) -> dict[CustomerRole, bool]:
        results: dict[CustomerRole, bool] = {}
        for role, group_info in self._groups.items():
            try:
                self._ensure_group_exists(group_info)
            except Exception as exc:
                # One group failing must not keep the others from being created.
                log_event(
                    "customer_role_group_init_failed",
                    level=logging.ERROR,
                    role=role.value,
                    group_id=group_info.id,
                    error=str(exc),
                )
                results[role] = False
                continue
            log_event(
                "customer_role_group_initialized",
                role=role.value,
                group_id=group_info.id,
            )
            results[role] = True
        return results

    def resolve_role(self, customer_id: str) -> CustomerRole:
        customer = self.store.retrieve_customer(customer_id, with_groups=True)
        member_of = set(customer.group_ids)

        if member_of:
            for role in ELEVATED_ROLE_PRIORITY:
                if self.config.group_id(role) in member_of:
                    log_event(
                        "customer_role_resolved",
                        level=logging.DEBUG,
                        customer_id=customer_id,
                        role=role.value,
                        source="group",
                    )
                    return role

        metadata_role = self._metadata_role(customer_id, customer.metadata)
        if metadata_role is not None:
            return metadata_role
        return DEFAULT_CUSTOMER_ROLE

    def resolve_role_or_default(self, customer_id: str) -> CustomerRole:
        try:
            return self.resolve_role(customer_id)
        except STORE_FAILURES as exc:
            log_event(
                "customer_role_degraded",
                level=logging.WARNING,
                customer_id=customer_id,
                role=DEFAULT_CUSTOMER_ROLE.value,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return DEFAULT_CUSTOMER_ROLE

    def assign_role(self, customer_id: str, role: CustomerRole | str) -> None:
        target = parse_role(role)
        if target is None:
            raise InvalidRoleError(role)
        group_info = self._groups[target]

        step = "retrieve_customer"
        try:
            self.store.retrieve_customer(customer_id)

            step = "ensure_group"
            self._ensure_group_exists(group_info)

            step = "remove_from_other_groups"
            self.remove_from_pricing_groups(customer_id, keep=target)

            step = "add_to_group"
            self.store.add_customer_to_group(customer_id=customer_id, group_id=group_info.id)

            step = "update_metadata"
            self.store.update_customer_metadata(
                customer_id,
                {PRICING_ROLE_METADATA_KEY: target.value},
            )
        except CustomerNotFoundError:
            raise
        except STORE_FAILURES as exc:
            log_event(
                "customer_role_assign_failed",
                level=logging.ERROR,
                customer_id=customer_id,
                role=target.value,
                group_id=group_info.id,
                step=step,
                error=str(exc),
            )
            raise RoleAssignmentError(
                customer_id=customer_id,
                role=target.value,
                step=step,
                cause=exc,
            ) from exc

        log_event(
            "customer_role_assigned",
            customer_id=customer_id,
            role=target.value,
            group_id=group_info.id,
        )

    def remove_from_pricing_groups(self, customer_id: str, *, keep: CustomerRole | None = None) -> None:
        for role, group_info in self._groups.items():
            if role == keep:
                continue
            try:
                self.store.remove_customer_from_group(
                    customer_id=customer_id,
                    group_id=group_info.id,
                )
            except (NotGroupMemberError, CustomerGroupNotFoundError):
                continue

    def list_roles(self) -> list[RoleGroupInfo]:
        return list(self._groups.values())

    def describe_role(self, role: CustomerRole | str) -> RoleGroupInfo | None:
        parsed = parse_role(role)
        if parsed is None:
            return None
        return self._groups[parsed]

    def group_id_for_role(self, role: CustomerRole | str) -> str:
        parsed = parse_role(role)
        if parsed is None:
            return self.config.group_id(DEFAULT_CUSTOMER_ROLE)
        return self.config.group_id(parsed)

    def _ensure_group_exists(self, group_info: RoleGroupInfo) -> None:
        try:
            self.store.retrieve_group(group_info.id)
            return
        except CustomerGroupNotFoundError:
            pass

        try:
            self.store.create_group(
                group_id=group_info.id,
                name=group_info.name,
                metadata={
                    "role": group_info.role.value,
                    "description": group_info.description,
                },
            )
        except CustomerGroupExistsError:
            return
        log_event(
            "customer_role_group_created",
            role=group_info.role.value,
            group_id=group_info.id,
        )

    def _metadata_role(self, customer_id: str, metadata: dict[str, Any]) -> CustomerRole | None:
        raw = metadata.get(PRICING_ROLE_METADATA_KEY)
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            return None
        parsed = parse_role(raw)
        if parsed is None:
            log_event(
                "customer_role_metadata_ignored",
                level=logging.WARNING,
                customer_id=customer_id,
                value=str(raw),
            )
            return None
        log_event(
            "customer_role_resolved",
            level=logging.DEBUG,
            customer_id=customer_id,
            role=parsed.value,
            source="metadata",
        )
        return parsed

from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.customer import Customer, CustomerGroup, CustomerGroupCustomer


class CustomerStoreError(Exception):
    pass


class CustomerNotFoundError(CustomerStoreError, LookupError):
    def __init__(self, customer_id: str):
        super().__init__(f'Customer with id "{customer_id}" not found')
        self.customer_id = customer_id


class CustomerGroupNotFoundError(CustomerStoreError, LookupError):
    def __init__(self, group_id: str):
        super().__init__(f'Customer group with id "{group_id}" not found')
        self.group_id = group_id


class CustomerGroupExistsError(CustomerStoreError):
    def __init__(self, group_id: str):
        super().__init__(f'Customer group with id "{group_id}" already exists')
        self.group_id = group_id


class NotGroupMemberError(CustomerStoreError):
    def __init__(self, customer_id: str, group_id: str):
        super().__init__(f'Customer "{customer_id}" is not a member of group "{group_id}"')
        self.customer_id = customer_id
        self.group_id = group_id


@dataclass(frozen=True)
class CustomerRecord:
    id: str
    email: str
    metadata: dict[str, Any] = field(default_factory=dict)
    group_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class CustomerGroupRecord:
    id: str
    name: str
    metadata: dict[str, Any] = field(default_factory=dict)


class CustomerStore(Protocol):
    def retrieve_customer(self, customer_id: str, *, with_groups: bool = False) -> CustomerRecord:
        ...

    def retrieve_group(self, group_id: str) -> CustomerGroupRecord:
        ...

    def create_group(
        self,
        *,
        group_id: str,
        name: str,
        metadata: dict[str, Any] | None = None,
    ) -> CustomerGroupRecord:
        ...

    def add_customer_to_group(self, *, customer_id: str, group_id: str) -> None:
        ...

    def remove_customer_from_group(self, *, customer_id: str, group_id: str) -> None:
        ...

    def update_customer_metadata(self, customer_id: str, metadata: dict[str, Any]) -> CustomerRecord:
        ...


class SqlAlchemyCustomerStore:
    """Customer and customer-group persistence on top of a SQLAlchemy session.

    Every mutating call commits on its own and rolls back on failure, so a
    multi-step caller sees each step either fully applied or not at all.
    """

    def __init__(self, db: Session):
        self.db = db

    def retrieve_customer(self, customer_id: str, *, with_groups: bool = False) -> CustomerRecord:
        customer = self._customer_or_raise(customer_id)
        group_ids: tuple[str, ...] = ()
        if with_groups:
            rows = self.db.execute(
                select(CustomerGroupCustomer.customer_group_id)
                .where(CustomerGroupCustomer.customer_id == customer.id)
                .order_by(CustomerGroupCustomer.customer_group_id.asc())
            ).scalars().all()
            group_ids = tuple(rows)
        return CustomerRecord(
            id=customer.id,
            email=customer.email,
            metadata=dict(customer.metadata_json or {}),
            group_ids=group_ids,
        )

    def retrieve_group(self, group_id: str) -> CustomerGroupRecord:
        group = self.db.get(CustomerGroup, group_id)
        if group is None:
            raise CustomerGroupNotFoundError(group_id)
        return _group_record(group)

    def create_group(
        self,
        *,
        group_id: str,
        name: str,
        metadata: dict[str, Any] | None = None,
    ) -> CustomerGroupRecord:
        if self.db.get(CustomerGroup, group_id) is not None:
            raise CustomerGroupExistsError(group_id)

        group = CustomerGroup(id=group_id, name=name, metadata_json=dict(metadata or {}))
        self.db.add(group)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            # Only a row under this id counts as already created; a clash on
            # the name alone leaves the group missing.
            if self.db.get(CustomerGroup, group_id) is not None:
                raise CustomerGroupExistsError(group_id) from exc
            raise
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(group)
        return _group_record(group)

    def add_customer_to_group(self, *, customer_id: str, group_id: str) -> None:
        self._customer_or_raise(customer_id)
        if self.db.get(CustomerGroup, group_id) is None:
            raise CustomerGroupNotFoundError(group_id)
        if self._membership(customer_id, group_id) is not None:
            return

        self.db.add(CustomerGroupCustomer(customer_id=customer_id, customer_group_id=group_id))
        try:
            self.db.commit()
        except IntegrityError:
            # Concurrent add of the same pair; membership exists either way.
            self.db.rollback()
        except Exception:
            self.db.rollback()
            raise

    def remove_customer_from_group(self, *, customer_id: str, group_id: str) -> None:
        self._customer_or_raise(customer_id)
        if self.db.get(CustomerGroup, group_id) is None:
            raise CustomerGroupNotFoundError(group_id)
        link = self._membership(customer_id, group_id)
        if link is None:
            raise NotGroupMemberError(customer_id, group_id)

        self.db.delete(link)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def update_customer_metadata(self, customer_id: str, metadata: dict[str, Any]) -> CustomerRecord:
        customer = self._customer_or_raise(customer_id)
        merged = dict(customer.metadata_json or {})
        merged.update(metadata)
        # Reassign so the JSON column is flagged dirty.
        customer.metadata_json = merged
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return self.retrieve_customer(customer_id)

    def _customer_or_raise(self, customer_id: str) -> Customer:
        customer = self.db.get(Customer, customer_id)
        if customer is None:
            raise CustomerNotFoundError(customer_id)
        return customer

    def _membership(self, customer_id: str, group_id: str) -> CustomerGroupCustomer | None:
        return self.db.execute(
            select(CustomerGroupCustomer).where(
                CustomerGroupCustomer.customer_id == customer_id,
                CustomerGroupCustomer.customer_group_id == group_id,
            )
        ).scalar_one_or_none()


def _group_record(group: CustomerGroup) -> CustomerGroupRecord:
    return CustomerGroupRecord(
        id=group.id,
        name=group.name,
        metadata=dict(group.metadata_json or {}),
    )

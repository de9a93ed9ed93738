import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from app.models.customer import Customer, CustomerGroup, CustomerGroupCustomer
from app.services.customer_roles import (
    CustomerRole,
    CustomerRoleConfig,
    CustomerRolesService,
    InvalidRoleError,
    RoleAssignmentError,
    role_visibility,
)
from app.services.customer_store import (
    CustomerGroupExistsError,
    CustomerGroupNotFoundError,
    CustomerNotFoundError,
    CustomerStoreError,
    SqlAlchemyCustomerStore,
)

CONFIG = CustomerRoleConfig(
    retail_group_id="grp_test_retail",
    bulk_group_id="grp_test_bulk",
    vip_group_id="grp_test_vip",
    supplier_group_id="grp_test_supplier",
)


class FailingStore:
    """Delegates to a real store but fails chosen operations."""

    def __init__(self, inner, *, fail_create_for=(), fail_on=()):
        self.inner = inner
        self.fail_create_for = set(fail_create_for)
        self.fail_on = set(fail_on)

    def _maybe_fail(self, operation):
        if operation in self.fail_on:
            raise CustomerStoreError(f"{operation} unavailable")

    def retrieve_customer(self, customer_id, *, with_groups=False):
        self._maybe_fail("retrieve_customer")
        return self.inner.retrieve_customer(customer_id, with_groups=with_groups)

    def retrieve_group(self, group_id):
        return self.inner.retrieve_group(group_id)

    def create_group(self, *, group_id, name, metadata=None):
        if group_id in self.fail_create_for:
            raise CustomerStoreError(f"cannot create {group_id}")
        return self.inner.create_group(group_id=group_id, name=name, metadata=metadata)

    def add_customer_to_group(self, *, customer_id, group_id):
        self._maybe_fail("add_customer_to_group")
        return self.inner.add_customer_to_group(customer_id=customer_id, group_id=group_id)

    def remove_customer_from_group(self, *, customer_id, group_id):
        self._maybe_fail("remove_customer_from_group")
        return self.inner.remove_customer_from_group(customer_id=customer_id, group_id=group_id)

    def update_customer_metadata(self, customer_id, metadata):
        self._maybe_fail("update_customer_metadata")
        return self.inner.update_customer_metadata(customer_id, metadata)


class RacingStore(FailingStore):
    """Another writer creates each missing group just before this one does."""

    def __init__(self, inner):
        super().__init__(inner)
        self.missed = set()

    def retrieve_group(self, group_id):
        if group_id not in self.missed:
            self.missed.add(group_id)
            raise CustomerGroupNotFoundError(group_id)
        return self.inner.retrieve_group(group_id)

    def create_group(self, *, group_id, name, metadata=None):
        self.inner.create_group(group_id=group_id, name=name, metadata=metadata)
        raise CustomerGroupExistsError(group_id)


def _create_customer(db, customer_id: str, *, metadata=None) -> Customer:
    customer = Customer(
        id=customer_id,
        email=f"{customer_id}@example.com",
        first_name="Test",
        metadata_json=metadata,
    )
    db.add(customer)
    db.commit()
    return customer


def _add_group(db, group_id: str, name: str | None = None) -> None:
    db.add(CustomerGroup(id=group_id, name=name or group_id, metadata_json={}))
    db.commit()


def _join(db, customer_id: str, group_id: str) -> None:
    db.add(CustomerGroupCustomer(customer_id=customer_id, customer_group_id=group_id))
    db.commit()


def _group_ids_for(db, customer_id: str) -> set[str]:
    db.expire_all()
    return set(
        db.execute(
            select(CustomerGroupCustomer.customer_group_id).where(
                CustomerGroupCustomer.customer_id == customer_id
            )
        ).scalars().all()
    )


def _metadata_for(db, customer_id: str) -> dict:
    db.expire_all()
    return dict(db.get(Customer, customer_id).metadata_json or {})


@pytest.fixture()
def service(db):
    return CustomerRolesService(SqlAlchemyCustomerStore(db), CONFIG)


def test_resolve_role_defaults_to_retail_without_groups_or_metadata(db, service):
    _create_customer(db, "cus_plain")

    assert service.resolve_role("cus_plain") == CustomerRole.RETAIL


def test_resolve_role_uses_metadata_when_customer_has_no_groups(db, service):
    _create_customer(db, "cus_meta", metadata={"pricing_role": "vip"})

    assert service.resolve_role("cus_meta") == CustomerRole.VIP


def test_resolve_role_ignores_blank_or_unknown_metadata(db, service):
    _create_customer(db, "cus_blank", metadata={"pricing_role": "  "})
    _create_customer(db, "cus_typo", metadata={"pricing_role": "wholesale"})

    assert service.resolve_role("cus_blank") == CustomerRole.RETAIL
    assert service.resolve_role("cus_typo") == CustomerRole.RETAIL


def test_group_membership_wins_over_stale_metadata(db, service):
    _create_customer(db, "cus_stale", metadata={"pricing_role": "vip"})
    service.initialize_groups()
    _join(db, "cus_stale", CONFIG.bulk_group_id)

    assert service.resolve_role("cus_stale") == CustomerRole.BULK


def test_vip_membership_is_checked_before_bulk(db, service):
    _create_customer(db, "cus_both")
    service.initialize_groups()
    _join(db, "cus_both", CONFIG.bulk_group_id)
    _join(db, "cus_both", CONFIG.vip_group_id)

    assert service.resolve_role("cus_both") == CustomerRole.VIP


def test_bulk_membership_is_checked_before_supplier(db, service):
    _create_customer(db, "cus_bulk_supplier")
    service.initialize_groups()
    _join(db, "cus_bulk_supplier", CONFIG.supplier_group_id)
    _join(db, "cus_bulk_supplier", CONFIG.bulk_group_id)

    assert service.resolve_role("cus_bulk_supplier") == CustomerRole.BULK


def test_unrelated_group_falls_back_to_metadata_then_default(db, service):
    _add_group(db, "grp_newsletter")
    _create_customer(db, "cus_news_meta", metadata={"pricing_role": "supplier"})
    _create_customer(db, "cus_news_plain")
    _join(db, "cus_news_meta", "grp_newsletter")
    _join(db, "cus_news_plain", "grp_newsletter")

    assert service.resolve_role("cus_news_meta") == CustomerRole.SUPPLIER
    assert service.resolve_role("cus_news_plain") == CustomerRole.RETAIL


def test_retail_group_membership_is_not_a_positive_signal(db, service):
    _create_customer(db, "cus_retail_meta", metadata={"pricing_role": "bulk"})
    service.initialize_groups()
    _join(db, "cus_retail_meta", CONFIG.retail_group_id)

    assert service.resolve_role("cus_retail_meta") == CustomerRole.BULK


def test_resolve_role_raises_not_found_for_unknown_customer(service):
    with pytest.raises(CustomerNotFoundError):
        service.resolve_role("cus_missing")


def test_resolve_role_or_default_degrades_to_retail_on_store_failure(db):
    _create_customer(db, "cus_flaky", metadata={"pricing_role": "vip"})
    flaky = FailingStore(SqlAlchemyCustomerStore(db), fail_on={"retrieve_customer"})
    service = CustomerRolesService(flaky, CONFIG)

    with pytest.raises(CustomerStoreError):
        service.resolve_role("cus_flaky")
    assert service.resolve_role_or_default("cus_flaky") == CustomerRole.RETAIL


def test_resolve_role_or_default_returns_resolved_role(db, service):
    _create_customer(db, "cus_ok", metadata={"pricing_role": "bulk"})

    assert service.resolve_role_or_default("cus_ok") == CustomerRole.BULK
    assert service.resolve_role_or_default("cus_missing") == CustomerRole.RETAIL


def test_assign_role_is_idempotent(db, service):
    _create_customer(db, "cus_idem")

    service.assign_role("cus_idem", "bulk")
    service.assign_role("cus_idem", CustomerRole.BULK)

    assert _group_ids_for(db, "cus_idem") == {CONFIG.bulk_group_id}
    assert service.resolve_role("cus_idem") == CustomerRole.BULK


def test_assign_role_supersedes_previous_role(db, service):
    _create_customer(db, "cus_swap")

    service.assign_role("cus_swap", "vip")
    service.assign_role("cus_swap", "retail")

    groups = _group_ids_for(db, "cus_swap")
    assert CONFIG.vip_group_id not in groups
    assert CONFIG.bulk_group_id not in groups
    assert CONFIG.supplier_group_id not in groups
    assert service.resolve_role("cus_swap") == CustomerRole.RETAIL
    assert _metadata_for(db, "cus_swap")["pricing_role"] == "retail"


def test_assign_role_clears_dual_elevated_membership(db, service):
    _create_customer(db, "cus_dual")
    service.initialize_groups()
    _join(db, "cus_dual", CONFIG.vip_group_id)
    _join(db, "cus_dual", CONFIG.supplier_group_id)

    service.assign_role("cus_dual", "bulk")

    assert _group_ids_for(db, "cus_dual") == {CONFIG.bulk_group_id}


def test_assign_role_keeps_unrelated_groups_and_metadata(db, service):
    _add_group(db, "grp_newsletter")
    _create_customer(db, "cus_keep", metadata={"newsletter": True, "pricing_role": "bulk"})
    _join(db, "cus_keep", "grp_newsletter")

    service.assign_role("cus_keep", "supplier")

    assert _group_ids_for(db, "cus_keep") == {"grp_newsletter", CONFIG.supplier_group_id}
    assert _metadata_for(db, "cus_keep") == {"newsletter": True, "pricing_role": "supplier"}


def test_assign_invalid_role_is_rejected_without_changes(db, service):
    _create_customer(db, "cus_invalid", metadata={"pricing_role": "bulk"})
    service.assign_role("cus_invalid", "bulk")

    with pytest.raises(InvalidRoleError):
        service.assign_role("cus_invalid", "wholesale")

    assert _group_ids_for(db, "cus_invalid") == {CONFIG.bulk_group_id}
    assert _metadata_for(db, "cus_invalid") == {"pricing_role": "bulk"}


def test_assign_invalid_role_is_checked_before_the_store_is_touched(db):
    flaky = FailingStore(SqlAlchemyCustomerStore(db), fail_on={"retrieve_customer"})
    service = CustomerRolesService(flaky, CONFIG)

    with pytest.raises(InvalidRoleError):
        service.assign_role("cus_anything", "platinum")


def test_assign_role_raises_not_found_for_unknown_customer(db, service):
    with pytest.raises(CustomerNotFoundError):
        service.assign_role("cus_missing", "vip")

    assert db.execute(select(CustomerGroupCustomer)).first() is None


def test_assign_role_wraps_store_failures_with_failing_step(db):
    _create_customer(db, "cus_broken")
    flaky = FailingStore(SqlAlchemyCustomerStore(db), fail_on={"update_customer_metadata"})
    service = CustomerRolesService(flaky, CONFIG)

    with pytest.raises(RoleAssignmentError) as exc_info:
        service.assign_role("cus_broken", "vip")

    assert exc_info.value.step == "update_metadata"
    assert exc_info.value.customer_id == "cus_broken"
    assert exc_info.value.role == "vip"
    assert isinstance(exc_info.value.__cause__, CustomerStoreError)
    # Group step already applied; the read path follows the group.
    assert service.resolve_role("cus_broken") == CustomerRole.VIP


def test_assign_role_propagates_removal_failures_other_than_not_member(db):
    _create_customer(db, "cus_remove_outage")
    flaky = FailingStore(SqlAlchemyCustomerStore(db), fail_on={"remove_customer_from_group"})
    service = CustomerRolesService(flaky, CONFIG)

    with pytest.raises(RoleAssignmentError) as exc_info:
        service.assign_role("cus_remove_outage", "bulk")

    assert exc_info.value.step == "remove_from_other_groups"
    assert _group_ids_for(db, "cus_remove_outage") == set()


def test_assign_role_creates_missing_group_with_role_metadata(db, service):
    _create_customer(db, "cus_lazy")

    service.assign_role("cus_lazy", "supplier")

    group = db.get(CustomerGroup, CONFIG.supplier_group_id)
    assert group is not None
    assert group.name == "Suppliers"
    assert group.metadata_json["role"] == "supplier"
    assert group.metadata_json["description"] == "Supplier accounts with special access"


def test_initialize_groups_creates_all_groups_and_is_repeatable(db, service):
    first = service.initialize_groups()
    second = service.initialize_groups()

    assert all(first.values())
    assert all(second.values())
    group_ids = set(db.execute(select(CustomerGroup.id)).scalars().all())
    assert group_ids == {
        CONFIG.retail_group_id,
        CONFIG.bulk_group_id,
        CONFIG.vip_group_id,
        CONFIG.supplier_group_id,
    }


def test_initialize_groups_tolerates_one_group_failing(db):
    flaky = FailingStore(
        SqlAlchemyCustomerStore(db),
        fail_create_for={CONFIG.supplier_group_id},
    )
    service = CustomerRolesService(flaky, CONFIG)

    results = service.initialize_groups()

    assert results == {
        CustomerRole.RETAIL: True,
        CustomerRole.BULK: True,
        CustomerRole.VIP: True,
        CustomerRole.SUPPLIER: False,
    }
    group_ids = set(db.execute(select(CustomerGroup.id)).scalars().all())
    assert group_ids == {CONFIG.retail_group_id, CONFIG.bulk_group_id, CONFIG.vip_group_id}


def test_list_roles_is_fixed_and_ordered(service):
    first = service.list_roles()
    second = service.list_roles()

    assert [info.role for info in first] == [
        CustomerRole.RETAIL,
        CustomerRole.BULK,
        CustomerRole.VIP,
        CustomerRole.SUPPLIER,
    ]
    assert first == second
    assert first is not second
    assert [info.id for info in first] == [
        CONFIG.retail_group_id,
        CONFIG.bulk_group_id,
        CONFIG.vip_group_id,
        CONFIG.supplier_group_id,
    ]


def test_describe_role_returns_none_for_unknown_role(service):
    info = service.describe_role("vip")

    assert info.id == CONFIG.vip_group_id
    assert info.name == "VIP Customers"
    assert service.describe_role("VIP ") == info
    assert service.describe_role("platinum") is None
    assert service.describe_role(None) is None


def test_group_id_for_role_falls_back_to_retail(service):
    assert service.group_id_for_role("bulk") == CONFIG.bulk_group_id
    assert service.group_id_for_role(CustomerRole.SUPPLIER) == CONFIG.supplier_group_id
    assert service.group_id_for_role("wholesale") == CONFIG.retail_group_id


def test_role_visibility_flags():
    assert role_visibility(CustomerRole.RETAIL).can_see_bulk_prices is False
    assert role_visibility(CustomerRole.RETAIL).can_see_vip_prices is False
    assert role_visibility(CustomerRole.BULK).can_see_bulk_prices is True
    assert role_visibility(CustomerRole.BULK).can_see_vip_prices is False
    assert role_visibility(CustomerRole.VIP).can_see_vip_prices is True
    assert role_visibility(CustomerRole.SUPPLIER).can_see_bulk_prices is True


def test_fresh_customer_vip_assignment_scenario(db, service):
    _create_customer(db, "cust_1")
    assert service.resolve_role("cust_1") == CustomerRole.RETAIL

    service.assign_role("cust_1", "vip")

    assert service.resolve_role("cust_1") == CustomerRole.VIP
    assert _metadata_for(db, "cust_1")["pricing_role"] == "vip"
    assert _group_ids_for(db, "cust_1") == {CONFIG.vip_group_id}


def test_initialize_groups_treats_concurrent_creation_as_success(db):
    service = CustomerRolesService(RacingStore(SqlAlchemyCustomerStore(db)), CONFIG)

    results = service.initialize_groups()

    assert all(results.values())
    group_ids = set(db.execute(select(CustomerGroup.id)).scalars().all())
    assert group_ids == {
        CONFIG.retail_group_id,
        CONFIG.bulk_group_id,
        CONFIG.vip_group_id,
        CONFIG.supplier_group_id,
    }


def test_assign_role_succeeds_when_another_writer_creates_the_group(db):
    _create_customer(db, "cus_race")
    service = CustomerRolesService(RacingStore(SqlAlchemyCustomerStore(db)), CONFIG)

    service.assign_role("cus_race", "bulk")

    assert _group_ids_for(db, "cus_race") == {CONFIG.bulk_group_id}
    assert service.resolve_role("cus_race") == CustomerRole.BULK


def test_initialize_groups_reports_group_blocked_by_name_clash(db, service):
    # A group left behind under an old id still holds the VIP name.
    _add_group(db, "grp_old_vip", "VIP Customers")
    _create_customer(db, "cus_clash")

    results = service.initialize_groups()

    assert results[CustomerRole.VIP] is False
    assert results[CustomerRole.BULK] is True
    assert db.get(CustomerGroup, CONFIG.vip_group_id) is None

    with pytest.raises(RoleAssignmentError) as exc_info:
        service.assign_role("cus_clash", "vip")
    assert exc_info.value.step == "ensure_group"
    assert isinstance(exc_info.value.__cause__, IntegrityError)
    assert _group_ids_for(db, "cus_clash") == set()


def test_create_group_maps_duplicate_id_insert_to_exists(db, monkeypatch):
    _add_group(db, "grp_dup", "Duplicates")
    db.expunge_all()
    store = SqlAlchemyCustomerStore(db)

    real_get = db.get
    calls = []

    def get_missing_once(entity, ident, **kwargs):
        calls.append(ident)
        if len(calls) == 1:
            return None
        return real_get(entity, ident, **kwargs)

    # Lose the pre-check so the insert reaches the unique key.
    monkeypatch.setattr(db, "get", get_missing_once)

    with pytest.raises(CustomerGroupExistsError) as exc_info:
        store.create_group(group_id="grp_dup", name="Duplicates again")

    assert isinstance(exc_info.value.__cause__, IntegrityError)
    monkeypatch.undo()
    assert db.get(CustomerGroup, "grp_dup").name == "Duplicates"

import sys
from pathlib import Path
sys.path.append(str(Path(__file__).parent.parent.parent))

import pytest
from datetime import date
from decimal import Decimal
from itertools import count
from src.models.invoice import Invoice, InvoiceItem, InvoiceItemType, CallContext
from src.services.grouping import (
    SubscriptionGroupingPlugin,
    allocate_group_invoice_ids,
    regroup_items,
    resolve_target_invoices,
    validate_group_assignment,
)


def sequential_ids(prefix="INV"):
    counter = count()
    return lambda: f"{prefix}-{next(counter)}"


def make_item(subscription_id, amount="29.95", invoice_id="DRAFT", item_type=InvoiceItemType.RECURRING):
    return InvoiceItem(
        invoice_id=invoice_id,
        account_id="ACC1",
        subscription_id=subscription_id,
        item_type=item_type,
        amount=Decimal(amount),
        currency="USD",
        start_date=date(2012, 5, 1),
        end_date=date(2012, 6, 1),
    )


@pytest.fixture
def items():
    return [
        make_item("SUB1", "29.95"),
        make_item("SUB2", "19.95"),
        make_item("SUB1", "5.00", item_type=InvoiceItemType.USAGE),
        make_item(None, "-3.00", item_type=InvoiceItemType.CREDIT_ADJ),
        make_item("SUB3", "7.50"),
    ]


class TestResolveTargetInvoices:
    """Test suite for the grouping resolver"""

    def test_empty_assignment_is_identity(self, items):
        """Test that no grouping keeps every item on its invoice"""
        targets = resolve_target_invoices(items, {})

        assert targets == {item: "DRAFT" for item in items}

    def test_same_group_shares_invoice(self, items):
        """Test that items of one group land on the same new invoice"""
        targets = resolve_target_invoices(items, {"SUB1": 0, "SUB2": 0}, id_factory=sequential_ids())

        assert targets[items[0]] == targets[items[1]] == targets[items[2]] == "INV-0"

    def test_each_group_gets_its_own_invoice(self, items):
        """Test that distinct groups get distinct invoice ids"""
        targets = resolve_target_invoices(items, {"SUB1": 0, "SUB2": 1}, id_factory=sequential_ids())

        assert targets[items[0]] == "INV-0"
        assert targets[items[1]] == "INV-1"
        assert targets[items[0]] != targets[items[1]]

    def test_unassigned_items_stay_on_source_invoice(self, items):
        """Test that unassigned subscriptions and account-level items are not moved"""
        targets = resolve_target_invoices(items, {"SUB1": 0}, id_factory=sequential_ids())

        assert targets[items[1]] == "DRAFT"
        assert targets[items[3]] == "DRAFT"
        assert targets[items[4]] == "DRAFT"

    def test_every_item_is_mapped_once(self, items):
        """Test partition completeness"""
        targets = resolve_target_invoices(items, {"SUB1": 1, "SUB3": 0})

        assert set(targets) == set(items)
        assert len(targets) == len(items)

    def test_uses_preallocated_ids(self, items):
        """Test that ids allocated by the caller are reused"""
        targets = resolve_target_invoices(items, {"SUB2": 0}, group_invoice_ids={0: "GIVEN"})

        assert targets[items[1]] == "GIVEN"


class TestAllocateGroupInvoiceIds:
    """Test suite for group id allocation"""

    def test_allocates_max_plus_one_ids(self):
        """Test that gaps in group indices still allocate ids"""
        ids = allocate_group_invoice_ids({"SUB1": 0, "SUB2": 3}, sequential_ids())

        assert ids == {0: "INV-0", 1: "INV-1", 2: "INV-2", 3: "INV-3"}

    def test_empty_assignment_allocates_nothing(self):
        """Test the no-grouping fast path"""
        assert allocate_group_invoice_ids({}) == {}

    def test_default_ids_are_unique(self):
        """Test that generated ids never collide"""
        ids = allocate_group_invoice_ids({"SUB1": 49})

        assert len(set(ids.values())) == 50


class TestValidateGroupAssignment:
    """Test suite for group assignment validation"""

    def test_accepts_non_negative_integers(self):
        assert validate_group_assignment({"SUB1": 0, "SUB2": 2}) == {"SUB1": 0, "SUB2": 2}

    @pytest.mark.parametrize("group", [-1, "0", 1.5, True])
    def test_rejects_invalid_groups(self, group):
        with pytest.raises(ValueError):
            validate_group_assignment({"SUB1": group})


class TestRegroupItems:
    """Test suite for invoice id rewriting"""

    def test_rewrite_only_changes_invoice_id(self, items):
        """Test that rewritten items are copies differing only by invoice id"""
        rewritten = regroup_items(items, {"SUB1": 0}, sequential_ids())
        by_id = {item.id: item for item in rewritten}

        for original in items:
            copy = by_id[original.id]
            assert copy.model_dump(exclude={"invoice_id"}) == original.model_dump(exclude={"invoice_id"})
        assert items[0].invoice_id == "DRAFT"

    def test_orders_source_items_then_groups(self, items):
        """Test that remaining items come first, then groups by index"""
        rewritten = regroup_items(items, {"SUB1": 1, "SUB2": 0}, sequential_ids())

        assert [item.invoice_id for item in rewritten] == ["DRAFT", "DRAFT", "INV-0", "INV-1", "INV-1"]
        assert [item.id for item in rewritten] == [items[3].id, items[4].id, items[1].id, items[0].id, items[2].id]

    def test_amounts_are_conserved(self, items):
        """Test that regrouping never changes the total"""
        rewritten = regroup_items(items, {"SUB1": 0, "SUB2": 1, "SUB3": 2})

        assert sum(item.amount for item in rewritten) == sum(item.amount for item in items)

    def test_no_assignment_returns_items_unchanged(self, items):
        assert regroup_items(items, {}) == items


class TestSubscriptionGroupingPlugin:
    """Test suite for the grouping invoice plugin"""

    def make_draft(self, items):
        return Invoice(
            id="DRAFT",
            account_id="ACC1",
            invoice_date=date(2012, 5, 1),
            target_date=date(2012, 5, 1),
            currency="USD",
            items=items,
        )

    def test_no_assignment_requests_no_split(self, items):
        plugin = SubscriptionGroupingPlugin()

        assert plugin.get_additional_invoice_items(self.make_draft(items), False, [], CallContext()) == []

    def test_assignment_is_per_account(self, items):
        plugin = SubscriptionGroupingPlugin(id_factory=sequential_ids())
        plugin.assign("OTHER", {"SUB1": 0})

        assert plugin.get_additional_invoice_items(self.make_draft(items), False, [], CallContext()) == []

    def test_dispatches_items_to_group_invoices(self, items):
        plugin = SubscriptionGroupingPlugin(id_factory=sequential_ids())
        plugin.assign("ACC1", {"SUB1": 0, "SUB2": 1})

        rewritten = plugin.get_additional_invoice_items(self.make_draft(items), True, [], CallContext())

        assert {item.invoice_id for item in rewritten} == {"DRAFT", "INV-0", "INV-1"}
        assert len(rewritten) == len(items)

    def test_prior_call_always_proceeds(self):
        result = SubscriptionGroupingPlugin().prior_call(None, [])

        assert result.is_aborted is False
        assert result.reschedule_date is None

    def test_reset_and_clear(self):
        plugin = SubscriptionGroupingPlugin()
        plugin.assign("ACC1", {"SUB1": 0})
        plugin.assign("ACC2", {"SUB2": 0})

        plugin.clear("ACC1")
        assert plugin.assignment_for("ACC1") == {}
        assert plugin.assignment_for("ACC2") == {"SUB2": 0}

        plugin.reset()
        assert plugin.assignment_for("ACC2") == {}

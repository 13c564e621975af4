"""
Grouping of invoice items into separate invoices.

A group assignment maps subscription ids to 0-based group indices. Every
group gets one freshly generated invoice id; items of a subscription that
has no group stay on the invoice they came from.
"""

from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence
import logging

from src.models.invoice import InvoiceItem, PriorInvoiceResult, new_id
from src.services.invoice_plugin import InvoicePluginApi

logger = logging.getLogger(__name__)

GroupAssignment = Mapping[str, int]

UNASSIGNED = -1


def validate_group_assignment(group_assignment: GroupAssignment) -> Dict[str, int]:
    """Check group indices and return a plain dict copy."""
    checked = {}
    for subscription_id, group in group_assignment.items():
        if isinstance(group, bool) or not isinstance(group, int):
            raise ValueError(f"Group of subscription {subscription_id} must be an integer, got {group!r}")
        if group < 0:
            raise ValueError(f"Group of subscription {subscription_id} must not be negative, got {group}")
        checked[subscription_id] = group
    return checked


def allocate_group_invoice_ids(
    group_assignment: GroupAssignment,
    id_factory: Callable[[], str] = new_id,
) -> Dict[int, str]:
    """
    Generate one invoice id per group index.

    The group count is ``max(index) + 1``; indices nobody uses still get an
    id, which simply stays unused.

    Args:
        group_assignment: subscription id -> group index
        id_factory: generator of globally unique invoice ids

    Returns:
        group index -> invoice id, in group order
    """
    if not group_assignment:
        return {}
    group_count = max(group_assignment.values()) + 1
    return {index: id_factory() for index in range(group_count)}


def resolve_target_invoices(
    items: Sequence[InvoiceItem],
    group_assignment: GroupAssignment,
    group_invoice_ids: Optional[Mapping[int, str]] = None,
    id_factory: Callable[[], str] = new_id,
) -> Dict[InvoiceItem, str]:
    """
    Map every item to the invoice it should end up on.

    Args:
        items: Items of the source invoice
        group_assignment: subscription id -> group index
        group_invoice_ids: Ids already allocated for this call, if any
        id_factory: generator used when ids must be allocated here

    Returns:
        item -> target invoice id
    """
    if not group_assignment:
        return {item: item.invoice_id for item in items}

    if group_invoice_ids is None:
        group_invoice_ids = allocate_group_invoice_ids(group_assignment, id_factory)

    targets = {}
    for item in items:
        group = group_assignment.get(item.subscription_id) if item.subscription_id is not None else None
        targets[item] = item.invoice_id if group is None else group_invoice_ids[group]
    return targets


def regroup_items(
    items: Sequence[InvoiceItem],
    group_assignment: GroupAssignment,
    id_factory: Callable[[], str] = new_id,
) -> List[InvoiceItem]:
    """
    Rewrite the items' invoice ids according to the group assignment.

    The result lists items staying on the source invoice first, then each
    group in index order; within a group the source order is kept.
    """
    if not group_assignment:
        return list(items)

    group_invoice_ids = allocate_group_invoice_ids(group_assignment, id_factory)
    targets = resolve_target_invoices(items, group_assignment, group_invoice_ids)

    def group_of(item: InvoiceItem) -> int:
        if item.subscription_id is None:
            return UNASSIGNED
        return group_assignment.get(item.subscription_id, UNASSIGNED)

    rewritten = [item.with_invoice_id(targets[item]) for item in items]
    order = sorted(range(len(items)), key=lambda index: group_of(items[index]))
    return [rewritten[index] for index in order]


class SubscriptionGroupingPlugin(InvoicePluginApi):
    """
    Invoice plugin placing each group of subscriptions on its own invoice.

    Assignments are kept per account and survive across generation cycles
    until cleared.
    """

    def __init__(self, id_factory: Callable[[], str] = new_id):
        self.id_factory = id_factory
        self.subscription_to_group: Dict[str, Dict[str, int]] = {}

    def assign(self, account_id: str, group_assignment: GroupAssignment) -> None:
        self.subscription_to_group[account_id] = validate_group_assignment(group_assignment)

    def clear(self, account_id: str) -> None:
        self.subscription_to_group.pop(account_id, None)

    def reset(self) -> None:
        self.subscription_to_group.clear()

    def assignment_for(self, account_id: str) -> Dict[str, int]:
        return dict(self.subscription_to_group.get(account_id, {}))

    def prior_call(self, context, properties):
        return PriorInvoiceResult()

    def get_additional_invoice_items(self, invoice, is_dry_run, properties, call_context):
        group_assignment = self.assignment_for(invoice.account_id)
        if not group_assignment:
            return []

        rewritten = regroup_items(invoice.items, group_assignment, self.id_factory)
        targets = list(dict.fromkeys(item.invoice_id for item in rewritten if item.invoice_id != invoice.id))
        logger.info(f"Dispatching items from {invoice.id} to {targets}")
        return rewritten

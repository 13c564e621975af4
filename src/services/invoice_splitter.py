from collections import Counter
from datetime import date
from decimal import Decimal
from typing import Dict, List, Sequence
import logging

from src.models.invoice import Invoice, InvoiceItem, InvoiceItemType, InvoiceStatus

logger = logging.getLogger(__name__)


class InvoiceGenerationError(Exception):
    """A generation cycle could not complete; nothing was committed."""
    pass


class InvoiceConservationError(InvoiceGenerationError):
    """Split invoices do not add up to the items they were built from."""
    pass


class InvoiceSplitter:
    """
    Turns a rewritten item list into one invoice per distinct invoice id.

    The draft's own id keeps the items still pointing at it and always comes
    first; new invoices follow in the order their id first appears.
    """

    def split(self, draft: Invoice, items: Sequence[InvoiceItem]) -> List[Invoice]:
        """
        Partition items into invoices.

        Args:
            draft: The draft invoice the items were computed for
            items: Items after plugin rewrite; ``invoice_id`` selects the target

        Returns:
            The resulting DRAFT invoices, without empty ones
        """
        buckets: Dict[str, List[InvoiceItem]] = {draft.id: []}
        for item in items:
            if item.account_id != draft.account_id:
                raise InvoiceGenerationError(
                    f"Item {item.id} belongs to account {item.account_id}, not {draft.account_id}"
                )
            if item.currency != draft.currency:
                raise InvoiceGenerationError(
                    f"Item {item.id} is in {item.currency}, invoice {draft.id} is in {draft.currency}"
                )
            if item.invoice_id is None:
                item = item.with_invoice_id(draft.id)
            buckets.setdefault(item.invoice_id, []).append(item)

        invoices = [
            Invoice(
                id=invoice_id,
                account_id=draft.account_id,
                invoice_date=draft.invoice_date,
                target_date=draft.target_date,
                currency=draft.currency,
                status=InvoiceStatus.DRAFT,
                items=bucket,
            )
            for invoice_id, bucket in buckets.items()
            if bucket
        ]

        if len(invoices) > 1 or (invoices and invoices[0].id != draft.id):
            logger.info(f"Split draft {draft.id} into {[invoice.id for invoice in invoices]}")
        return invoices


def check_conservation(items: Sequence[InvoiceItem], invoices: Sequence[Invoice]) -> None:
    """
    Ensure every item landed on exactly one invoice and totals are unchanged.

    Raises:
        InvoiceConservationError: on any dropped, duplicated or altered amount
    """
    source_ids = Counter(item.id for item in items)
    result_ids = Counter(item.id for invoice in invoices for item in invoice.items)
    if source_ids != result_ids:
        missing = sorted((source_ids - result_ids).elements())
        extra = sorted((result_ids - source_ids).elements())
        raise InvoiceConservationError(f"Item partition mismatch: missing={missing} extra={extra}")

    for invoice in invoices:
        stray = [item.id for item in invoice.items if item.invoice_id != invoice.id]
        if stray:
            raise InvoiceConservationError(f"Items {stray} do not point at invoice {invoice.id}")

    expected = sum((item.amount for item in items), Decimal("0"))
    actual = sum((invoice.balance for invoice in invoices), Decimal("0"))
    if expected != actual:
        raise InvoiceConservationError(f"Split total {actual} differs from item total {expected}")


class CreditBalancer:
    """Consumes available account credit into invoices with a positive balance."""

    def apply_credit(
        self,
        invoices: Sequence[Invoice],
        available_credit: Decimal,
        effective_date: date,
    ) -> List[Invoice]:
        """
        Add a CBA_ADJ item to each payable invoice while credit remains.

        Args:
            invoices: Invoices in commit order
            available_credit: Account credit not yet consumed
            effective_date: Date of the adjustment items

        Returns:
            The invoices, adjusted where credit was used
        """
        remaining = available_credit
        balanced = []
        for invoice in invoices:
            balance = invoice.balance
            if remaining > 0 and balance > 0:
                used = min(remaining, balance)
                adjustment = InvoiceItem(
                    invoice_id=invoice.id,
                    account_id=invoice.account_id,
                    item_type=InvoiceItemType.CBA_ADJ,
                    amount=-used,
                    currency=invoice.currency,
                    start_date=effective_date,
                    end_date=effective_date,
                    description="Account credit used",
                )
                invoice = invoice.with_items(invoice.items + (adjustment,))
                remaining -= used
                logger.info(f"Used {used} {invoice.currency} of account credit on invoice {invoice.id}")
            balanced.append(invoice)
        return balanced

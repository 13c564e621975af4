"""
Invoice lifecycle events.

After a generation cycle commits, every resulting invoice produces events in
commit order:

- NULL_INVOICE when it holds no non-zero item,
- INVOICE, INVOICE_PAYMENT, PAYMENT when a positive balance remains to be paid,
- INVOICE alone otherwise (credit invoices, invoices fully paid by credit).

A draft that ends up with nothing to commit is reported as NULL_INVOICE.
"""

from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence
import itertools
import logging

from src.models.invoice import Invoice, InvoiceEvent, InvoiceEventType

logger = logging.getLogger(__name__)

Publisher = Callable[[str, Dict], Awaitable[None]]


def event_types_for(invoice: Invoice) -> List[InvoiceEventType]:
    if not invoice.has_billable_items:
        return [InvoiceEventType.NULL_INVOICE]
    if invoice.balance > 0:
        return [InvoiceEventType.INVOICE, InvoiceEventType.INVOICE_PAYMENT, InvoiceEventType.PAYMENT]
    return [InvoiceEventType.INVOICE]


class InvoiceEventNotifier:
    """Builds and publishes the ordered event sequence of committed invoices."""

    def __init__(self, publisher: Optional[Publisher] = None):
        if publisher is None:
            # Imported lazily, src.config opens the database engine
            from src.config import publish_message
            publisher = publish_message
        self.publisher = publisher
        self._sequence = itertools.count(1)

    def build_events(
        self,
        account_id: str,
        invoices: Sequence[Invoice],
        null_invoice_ids: Iterable[str] = (),
    ) -> List[InvoiceEvent]:
        events = []
        for invoice_id in null_invoice_ids:
            events.append(InvoiceEvent(
                event_type=InvoiceEventType.NULL_INVOICE,
                account_id=account_id,
                invoice_id=invoice_id,
                sequence=next(self._sequence),
            ))
        for invoice in invoices:
            for event_type in event_types_for(invoice):
                events.append(InvoiceEvent(
                    event_type=event_type,
                    account_id=account_id,
                    invoice_id=invoice.id,
                    amount=invoice.balance,
                    currency=invoice.currency,
                    sequence=next(self._sequence),
                ))
        return events

    async def publish(self, events: Sequence[InvoiceEvent]) -> None:
        for event in events:
            try:
                await self.publisher(event.routing_key, event.to_message())
                logger.info(f"Published {event.event_type.value} for invoice {event.invoice_id}")
            except Exception as e:
                # Invoices stay committed when an event is lost
                logger.error(f"Failed to publish {event.event_type.value} for invoice {event.invoice_id}: {e}")

    async def notify(
        self,
        account_id: str,
        invoices: Sequence[Invoice],
        null_invoice_ids: Iterable[str] = (),
    ) -> List[InvoiceEvent]:
        """
        Publish the events of one committed cycle.

        Args:
            account_id: Account of the invoices
            invoices: Committed invoices in commit order
            null_invoice_ids: Draft ids that produced nothing to commit

        Returns:
            The published events in order
        """
        events = self.build_events(account_id, invoices, null_invoice_ids)
        await self.publish(events)
        return events

from datetime import date
from decimal import Decimal
from typing import List, Optional, Sequence
import logging

from sqlalchemy.ext.asyncio import async_sessionmaker

from src.models.invoice import CallContext, Invoice, InvoiceItem, InvoiceItemType, InvoiceStatus
from src.services.invoice_events import InvoiceEventNotifier
from src.services.invoice_generator import AccountLockManager
from src.services.invoice_repository import AccountNotFoundError, InvoiceNotFoundError, InvoiceRepository

logger = logging.getLogger(__name__)


class InvoiceUserApi:
    """
    Account-facing invoicing operations outside of generation cycles.

    Shares the account locks of the generator so that credits and voids never
    interleave with a cycle of the same account.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        notifier: Optional[InvoiceEventNotifier] = None,
        locks: Optional[AccountLockManager] = None,
    ):
        self.session_factory = session_factory
        self.notifier = notifier or InvoiceEventNotifier()
        self.locks = locks or AccountLockManager()

    async def get_invoices_by_account(
        self,
        account_id: str,
        include_voided: bool = False,
        include_draft: bool = False,
        call_context: Optional[CallContext] = None,
    ) -> List[Invoice]:
        async with self.session_factory() as session:
            repo = InvoiceRepository(session)
            if await repo.get_account(account_id) is None:
                raise AccountNotFoundError(f"Account {account_id} not found")
            return await repo.get_invoices_by_account(account_id, include_voided, include_draft)

    async def insert_credits(
        self,
        account_id: str,
        effective_date: date,
        items: Sequence[InvoiceItem],
        auto_commit: bool = True,
        call_context: Optional[CallContext] = None,
    ) -> Invoice:
        """
        Grant account credit.

        Each input item is a CREDIT_ADJ with a positive amount. The resulting
        invoice carries the credit (negative CREDIT_ADJ) and its conversion to
        account credit (positive CBA_ADJ), so its balance is zero.

        Args:
            account_id: Account receiving the credit
            effective_date: Date of the credit items
            items: Credits to grant
            auto_commit: Commit and notify now, or keep the invoice as DRAFT
            call_context: Context of the call

        Returns:
            The stored credit invoice
        """
        if not items:
            raise ValueError("At least one credit is required")

        async with self.locks.lock_for(account_id):
            async with self.session_factory() as session:
                repo = InvoiceRepository(session)
                account = await repo.lock_account(account_id)

                invoice = Invoice(
                    account_id=account_id,
                    invoice_date=effective_date,
                    target_date=effective_date,
                    currency=account.currency,
                )
                credit_items = []
                for item in items:
                    if item.item_type != InvoiceItemType.CREDIT_ADJ:
                        raise ValueError(f"Credit item {item.id} must be CREDIT_ADJ, got {item.item_type.value}")
                    if item.amount <= Decimal("0"):
                        raise ValueError(f"Credit item {item.id} must have a positive amount")
                    if item.currency != account.currency:
                        raise ValueError(f"Credit item {item.id} is in {item.currency}, account uses {account.currency}")
                    credit_items.append(item.model_copy(update={
                        "invoice_id": invoice.id,
                        "account_id": account_id,
                        "amount": -item.amount,
                        "start_date": effective_date,
                        "end_date": effective_date,
                    }))
                    credit_items.append(InvoiceItem(
                        invoice_id=invoice.id,
                        account_id=account_id,
                        item_type=InvoiceItemType.CBA_ADJ,
                        amount=item.amount,
                        currency=account.currency,
                        start_date=effective_date,
                        end_date=effective_date,
                        description=item.description,
                    ))
                invoice = invoice.with_items(credit_items)

                status = InvoiceStatus.COMMITTED if auto_commit else InvoiceStatus.DRAFT
                saved = (await repo.save_invoices(account_id, [invoice], status))[0]

            if auto_commit:
                await self.notifier.notify(account_id, [saved])

        credit = sum((item.amount for item in items), Decimal("0"))
        logger.info(f"Inserted credit of {credit} {saved.currency} for account {account_id}")
        return saved

    async def void_invoice(
        self,
        account_id: str,
        invoice_id: str,
        call_context: Optional[CallContext] = None,
    ) -> Invoice:
        """Mark a committed invoice VOID"""
        async with self.locks.lock_for(account_id):
            async with self.session_factory() as session:
                repo = InvoiceRepository(session)
                await repo.lock_account(account_id)
                invoice = await repo.get_invoice(invoice_id)
                if invoice is None or invoice.account_id != account_id:
                    raise InvoiceNotFoundError(f"Invoice {invoice_id} not found for account {account_id}")
                if invoice.status != InvoiceStatus.COMMITTED:
                    raise ValueError(f"Only committed invoices can be voided, {invoice_id} is {invoice.status.value}")
                await repo.set_invoice_status(invoice_id, InvoiceStatus.VOID)
                logger.info(f"Voided invoice {invoice_id} of account {account_id}")
                return invoice.with_status(InvoiceStatus.VOID)

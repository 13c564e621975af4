from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from sqlalchemy.orm import selectinload
from src.models.models import Account, InvoiceRecord, InvoiceItemRecord, InvoiceTrigger
from src.models.invoice import Invoice, InvoiceItemType, InvoiceStatus, new_id
from datetime import date
from decimal import Decimal
from typing import List, Optional, Sequence
import logging

logger = logging.getLogger(__name__)


class AccountNotFoundError(LookupError):
    """Raised when an operation targets an unknown account."""
    pass


class InvoiceNotFoundError(LookupError):
    """Raised when an operation targets an unknown invoice."""
    pass


def _to_record(invoice: Invoice) -> InvoiceRecord:
    return InvoiceRecord(
        id=invoice.id,
        account_id=invoice.account_id,
        invoice_number=invoice.invoice_number,
        invoice_date=invoice.invoice_date,
        target_date=invoice.target_date,
        currency=invoice.currency,
        status=invoice.status.value,
        items=[
            InvoiceItemRecord(
                id=item.id,
                invoice_id=invoice.id,
                account_id=item.account_id,
                subscription_id=item.subscription_id,
                item_type=item.item_type.value,
                amount=item.amount,
                currency=item.currency,
                start_date=item.start_date,
                end_date=item.end_date,
                description=item.description,
                position=position,
            )
            for position, item in enumerate(invoice.items)
        ],
    )


class InvoiceRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_account(self, id: str, name: str, currency: str = "USD") -> Account:
        """Create a new account"""
        account = Account(id=id, name=name, currency=currency.upper())
        self.session.add(account)
        await self.session.commit()
        await self.session.refresh(account)
        return account

    async def get_account(self, id: str) -> Optional[Account]:
        """Retrieve an account by ID"""
        return await self.session.get(Account, id)

    async def lock_account(self, id: str) -> Account:
        """Load the account row for update, blocking other writers of this account"""
        result = await self.session.execute(select(Account).where(Account.id == id).with_for_update())
        account = result.scalar_one_or_none()
        if account is None:
            raise AccountNotFoundError(f"Account {id} not found")
        return account

    async def next_invoice_number(self, account_id: str) -> int:
        result = await self.session.execute(
            select(func.max(InvoiceRecord.invoice_number)).where(InvoiceRecord.account_id == account_id)
        )
        return (result.scalar() or 0) + 1

    async def save_invoices(
        self,
        account_id: str,
        invoices: Sequence[Invoice],
        status: InvoiceStatus = InvoiceStatus.COMMITTED,
    ) -> List[Invoice]:
        """
        Persist several invoices of one account in a single transaction.

        Either every invoice is stored or none is.

        Args:
            account_id: Account all invoices belong to
            invoices: Invoices in numbering order
            status: Status the invoices are stored with

        Returns:
            The stored invoices with their invoice numbers
        """
        try:
            number = await self.next_invoice_number(account_id)
            saved = []
            for invoice in invoices:
                if invoice.account_id != account_id:
                    raise ValueError(f"Invoice {invoice.id} does not belong to account {account_id}")
                invoice = invoice.model_copy(update={"invoice_number": number, "status": status})
                self.session.add(_to_record(invoice))
                saved.append(invoice)
                number += 1
            await self.session.commit()
        except Exception as e:
            await self.session.rollback()
            logger.error(f"Failed to store invoices for account {account_id}: {e}")
            raise

        logger.info(f"Stored {len(saved)} {status.value} invoice(s) for account {account_id}")
        return saved

    async def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        result = await self.session.execute(
            select(InvoiceRecord)
            .options(selectinload(InvoiceRecord.items))
            .where(InvoiceRecord.id == invoice_id)
        )
        record = result.scalar_one_or_none()
        return Invoice.model_validate(record) if record is not None else None

    async def get_invoices_by_account(
        self,
        account_id: str,
        include_voided: bool = False,
        include_draft: bool = False,
    ) -> List[Invoice]:
        """Get the invoices of an account ordered by invoice number"""
        statuses = [InvoiceStatus.COMMITTED.value]
        if include_voided:
            statuses.append(InvoiceStatus.VOID.value)
        if include_draft:
            statuses.append(InvoiceStatus.DRAFT.value)

        result = await self.session.execute(
            select(InvoiceRecord)
            .options(selectinload(InvoiceRecord.items))
            .where(InvoiceRecord.account_id == account_id, InvoiceRecord.status.in_(statuses))
            .order_by(InvoiceRecord.invoice_number)
        )
        return [Invoice.model_validate(record) for record in result.scalars().all()]

    async def get_account_credit(self, account_id: str) -> Decimal:
        """Credit generated minus credit consumed on the account's committed invoices"""
        result = await self.session.execute(
            select(InvoiceItemRecord.amount)
            .join(InvoiceRecord, InvoiceItemRecord.invoice_id == InvoiceRecord.id)
            .where(
                InvoiceRecord.account_id == account_id,
                InvoiceRecord.status == InvoiceStatus.COMMITTED.value,
                InvoiceItemRecord.item_type == InvoiceItemType.CBA_ADJ.value,
            )
        )
        return sum((Decimal(amount) for amount in result.scalars().all()), Decimal("0"))

    async def set_invoice_status(self, invoice_id: str, status: InvoiceStatus) -> InvoiceRecord:
        record = await self.session.get(InvoiceRecord, invoice_id)
        if record is None:
            raise InvoiceNotFoundError(f"Invoice {invoice_id} not found")
        record.status = status.value
        await self.session.commit()
        return record

    async def schedule_trigger(self, account_id: str, target_date: date, effective_date: date) -> InvoiceTrigger:
        """Record a deferred generation request"""
        trigger = InvoiceTrigger(
            id=new_id(),
            account_id=account_id,
            target_date=target_date,
            effective_date=effective_date,
            processed=False,
        )
        self.session.add(trigger)
        await self.session.commit()
        await self.session.refresh(trigger)
        return trigger

    async def get_due_triggers(self, as_of: date) -> List[InvoiceTrigger]:
        result = await self.session.execute(
            select(InvoiceTrigger)
            .where(InvoiceTrigger.processed.is_(False), InvoiceTrigger.effective_date <= as_of)
            .order_by(InvoiceTrigger.effective_date, InvoiceTrigger.created_at)
        )
        return result.scalars().all()

    async def mark_trigger_processed(self, trigger_id: str) -> None:
        trigger = await self.session.get(InvoiceTrigger, trigger_id)
        if trigger is not None:
            trigger.processed = True
            await self.session.commit()

"""
Invoice generation cycle.

One cycle for one account runs, under a per-account lock:

1. ``prior_call`` on the configured plugin (abort / reschedule / proceed)
2. draft computation by the draft builder
3. ``get_additional_invoice_items``; the returned items replace the draft's,
   which must all be kept with only their invoice id rewritten
4. split into one invoice per invoice id, then account credit placement
5. atomic commit of every resulting invoice
6. lifecycle events, then ``on_success_call``

Any failure from step 1 on rolls everything back and calls
``on_failure_call`` before the error propagates.
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import Iterable, List, Optional, Sequence
import asyncio
import logging
import weakref

from sqlalchemy.ext.asyncio import async_sessionmaker

from src.models.models import Account
from src.models.invoice import (
    CallContext,
    GenerationResult,
    GenerationStatus,
    Invoice,
    InvoiceContext,
    InvoiceItem,
    PluginProperty,
)
from src.services.invoice_events import InvoiceEventNotifier
from src.services.invoice_plugin import InvoicePluginApi, InvoicePluginRegistry
from src.services.invoice_repository import InvoiceRepository
from src.services.invoice_splitter import (
    CreditBalancer,
    InvoiceGenerationError,
    InvoiceSplitter,
    check_conservation,
)

logger = logging.getLogger(__name__)


class InvoicePluginError(InvoiceGenerationError):
    """The invoice plugin failed while rewriting the draft."""
    pass


class DraftInvoiceBuilder(ABC):
    """Computes the candidate items of an account for a target date."""

    @abstractmethod
    async def build_draft(
        self,
        account: Account,
        target_date: date,
        existing_invoices: Sequence[Invoice],
    ) -> Optional[Invoice]:
        """
        Build the draft invoice.

        Args:
            account: The account being invoiced
            target_date: Date up to which charges are billed
            existing_invoices: Committed invoices of the account

        Returns:
            A DRAFT invoice whose items point at it; None or no items when
            there is nothing to bill
        """
        pass


class AccountLockManager:
    """One asyncio lock per account id, dropped once nobody holds it."""

    def __init__(self):
        self._locks = weakref.WeakValueDictionary()

    def lock_for(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock


class InvoiceGenerator:
    """Runs invoice generation cycles against the configured plugin."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        draft_builder: DraftInvoiceBuilder,
        plugin_registry: InvoicePluginRegistry,
        plugin_name: str,
        notifier: Optional[InvoiceEventNotifier] = None,
        splitter: Optional[InvoiceSplitter] = None,
        balancer: Optional[CreditBalancer] = None,
        locks: Optional[AccountLockManager] = None,
    ):
        self.session_factory = session_factory
        self.draft_builder = draft_builder
        self.plugin_registry = plugin_registry
        self.plugin_name = plugin_name
        self.notifier = notifier or InvoiceEventNotifier()
        self.splitter = splitter or InvoiceSplitter()
        self.balancer = balancer or CreditBalancer()
        self.locks = locks or AccountLockManager()

    async def generate_invoice(
        self,
        account_id: str,
        target_date: date,
        call_context: Optional[CallContext] = None,
        dry_run: bool = False,
        properties: Iterable[PluginProperty] = (),
        is_rescheduled: bool = False,
    ) -> GenerationResult:
        """
        Run one generation cycle for an account.

        Args:
            account_id: Account to invoice
            target_date: Date up to which charges are billed
            call_context: Context of the triggering call
            dry_run: Compute and return the invoices without storing them
            properties: Plugin properties forwarded to every plugin call
            is_rescheduled: True when the cycle replays a deferred trigger

        Returns:
            The cycle outcome with resulting invoices and emitted events

        Raises:
            AccountNotFoundError: unknown account
            InvoiceGenerationError: the cycle failed and nothing was committed
        """
        plugin = self.plugin_registry.get_service(self.plugin_name)
        properties = list(properties)
        call_context = call_context or CallContext()

        async with self.locks.lock_for(account_id):
            async with self.session_factory() as session:
                repo = InvoiceRepository(session)
                account = await repo.lock_account(account_id)
                existing = await repo.get_invoices_by_account(account_id)
                context = InvoiceContext(
                    account_id=account_id,
                    target_date=target_date,
                    existing_invoices=existing,
                    is_dry_run=dry_run,
                    is_rescheduled=is_rescheduled,
                    call_context=call_context,
                )

                try:
                    prior = plugin.prior_call(context, properties)
                except Exception as e:
                    await session.rollback()
                    logger.error(f"Invoice plugin prior call failed for account {account_id}: {e}")
                    if not dry_run:
                        self._callback(plugin.on_failure_call, context, properties)
                    raise InvoicePluginError(f"Invoice plugin prior call failed for account {account_id}: {e}") from e
                if prior.is_aborted:
                    logger.info(f"Invoice plugin aborted generation for account {account_id}")
                    await session.rollback()
                    return GenerationResult(status=GenerationStatus.ABORTED, account_id=account_id)
                if prior.reschedule_date is not None:
                    return await self._reschedule(repo, account_id, target_date, prior.reschedule_date, dry_run)

                try:
                    draft, invoices = await self._build_invoices(
                        repo, plugin, account, target_date, existing, dry_run, properties, call_context
                    )
                    context = context.model_copy(update={"invoice": draft})
                    if dry_run:
                        await session.rollback()
                        return GenerationResult(
                            status=GenerationStatus.DRY_RUN, account_id=account_id, invoices=invoices
                        )
                    saved = await repo.save_invoices(account_id, invoices) if invoices else []
                except Exception as e:
                    await session.rollback()
                    logger.error(f"Invoice generation failed for account {account_id}: {e}")
                    if not dry_run:
                        self._callback(plugin.on_failure_call, context, properties)
                    raise

            null_invoice_ids = [] if any(invoice.id == draft.id for invoice in saved) else [draft.id]
            events = await self.notifier.notify(account_id, saved, null_invoice_ids)

        self._callback(plugin.on_success_call, context, properties)
        return GenerationResult(
            status=GenerationStatus.COMMITTED if saved else GenerationStatus.NOTHING_TO_BILL,
            account_id=account_id,
            invoices=saved,
            events=events,
        )

    async def _reschedule(
        self,
        repo: InvoiceRepository,
        account_id: str,
        target_date: date,
        reschedule_date: date,
        dry_run: bool,
    ) -> GenerationResult:
        if not dry_run:
            await repo.schedule_trigger(account_id, target_date, reschedule_date)
        logger.info(f"Invoice generation for account {account_id} rescheduled to {reschedule_date}")
        return GenerationResult(
            status=GenerationStatus.RESCHEDULED, account_id=account_id, reschedule_date=reschedule_date
        )

    async def _build_invoices(
        self,
        repo: InvoiceRepository,
        plugin: InvoicePluginApi,
        account: Account,
        target_date: date,
        existing: Sequence[Invoice],
        dry_run: bool,
        properties: List[PluginProperty],
        call_context: CallContext,
    ):
        draft = await self.draft_builder.build_draft(account, target_date, existing)
        if draft is None:
            draft = Invoice(account_id=account.id, invoice_date=target_date, target_date=target_date,
                            currency=account.currency)
        if not draft.items:
            return draft, []

        try:
            returned = plugin.get_additional_invoice_items(draft, dry_run, properties, call_context)
        except Exception as e:
            raise InvoicePluginError(f"Invoice plugin failed on draft {draft.id}: {e}") from e

        items = self._rewritten_items(draft, returned)
        invoices = self.splitter.split(draft, items)
        check_conservation(items, invoices)
        credit = await repo.get_account_credit(account.id)
        return draft, self.balancer.apply_credit(invoices, credit, target_date)

    @staticmethod
    def _rewritten_items(draft: Invoice, returned: Optional[Sequence[InvoiceItem]]) -> List[InvoiceItem]:
        if not returned:
            return list(draft.items)

        originals = {item.id: item for item in draft.items}
        items = []
        seen = set()
        for item in returned:
            if item.id in seen:
                raise InvoicePluginError(f"Invoice plugin returned item {item.id} twice")
            seen.add(item.id)
            original = originals.get(item.id)
            # Only the invoice id of a draft item may be rewritten
            if original is not None and item.model_dump(exclude={"invoice_id"}) != original.model_dump(
                exclude={"invoice_id"}
            ):
                raise InvoicePluginError(f"Invoice plugin altered item {item.id} beyond its invoice id")
            items.append(item if item.invoice_id is not None else item.with_invoice_id(draft.id))

        missing = [item_id for item_id in originals if item_id not in seen]
        if missing:
            raise InvoicePluginError(f"Invoice plugin dropped draft items {missing}")
        return items

    @staticmethod
    def _callback(callback, context: InvoiceContext, properties: List[PluginProperty]) -> None:
        try:
            callback(context, properties)
        except Exception as e:
            logger.warning(f"Invoice plugin callback {callback.__name__} failed: {e}")

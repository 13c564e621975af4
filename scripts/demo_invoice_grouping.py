#!/usr/bin/env python3
"""
Invoice Grouping Demo Flow

Runs two billing cycles for one account against a local SQLite database:

1. Trial period: two subscriptions, $0 invoices
2. First billing with each subscription grouped on its own invoice,
   after a $10 account credit

Usage: python scripts/demo_invoice_grouping.py
"""

import asyncio
import os
import sys
import tempfile
from datetime import date
from decimal import Decimal

# Add src to path for imports
sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

os.environ.setdefault(
    "DATABASE_URL", f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), 'invoice-grouping-demo.db')}"
)

from src.config import engine, async_session
from src.models.models import Base, Account
from src.models.invoice import Invoice, InvoiceItem, InvoiceItemType
from src.services.grouping import SubscriptionGroupingPlugin
from src.services.invoice_api import InvoiceUserApi
from src.services.invoice_events import InvoiceEventNotifier
from src.services.invoice_generator import AccountLockManager, DraftInvoiceBuilder, InvoiceGenerator
from src.services.invoice_plugin import InvoicePluginRegistry

ACCOUNT_ID = "DEMO-ACCOUNT"
PLUGIN_NAME = "subscription-grouping"


class CatalogDraftBuilder(DraftInvoiceBuilder):
    """Bills a fixed catalog: $0 trial on 2012-04-01, $29.95 monthly from 2012-05-01."""

    SUBSCRIPTIONS = ("blowdart-monthly", "pistol-monthly")

    async def build_draft(self, account, target_date, existing_invoices):
        billed = {(item.subscription_id, item.start_date) for invoice in existing_invoices for item in invoice.items}
        draft = Invoice(account_id=account.id, invoice_date=target_date, target_date=target_date,
                        currency=account.currency)
        items = []
        for subscription_id in self.SUBSCRIPTIONS:
            for item_type, amount, start_date, end_date in (
                (InvoiceItemType.FIXED, "0", date(2012, 4, 1), None),
                (InvoiceItemType.RECURRING, "29.95", date(2012, 5, 1), date(2012, 6, 1)),
            ):
                if start_date <= target_date and (subscription_id, start_date) not in billed:
                    items.append(InvoiceItem(
                        invoice_id=draft.id,
                        account_id=account.id,
                        subscription_id=subscription_id,
                        item_type=item_type,
                        amount=Decimal(amount),
                        currency=account.currency,
                        start_date=start_date,
                        end_date=end_date,
                    ))
        return draft.with_items(items)


class InvoiceGroupingDemo:
    """Invoice grouping demonstration orchestrator."""

    def __init__(self):
        self.events = []
        self.notifier = InvoiceEventNotifier(self.record_event)
        self.locks = AccountLockManager()
        self.plugin = SubscriptionGroupingPlugin()
        registry = InvoicePluginRegistry()
        registry.register_service(PLUGIN_NAME, self.plugin)
        self.generator = InvoiceGenerator(async_session, CatalogDraftBuilder(), registry, PLUGIN_NAME,
                                          notifier=self.notifier, locks=self.locks)
        self.invoice_api = InvoiceUserApi(async_session, notifier=self.notifier, locks=self.locks)

    async def record_event(self, routing_key, message_body):
        self.events.append(message_body)
        print(f"   📨 {message_body['event_type']:<16} invoice={message_body['invoice_id'][:8]} "
              f"amount={message_body['amount']}")

    def print_header(self, title: str):
        """Print formatted section header."""
        print(f"\n{'─'*40}")
        print(f"📋 {title}")
        print(f"{'─'*40}")

    def print_invoices(self, invoices):
        for invoice in invoices:
            print(f"   🧾 #{invoice.invoice_number} {invoice.id[:8]} balance={invoice.balance}")
            for item in invoice.items:
                print(f"      • {item.item_type.value:<10} {item.subscription_id or '-':<18} {item.amount}")

    async def setup(self):
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
        async with async_session() as session:
            session.add(Account(id=ACCOUNT_ID, name="Demo Account", currency="USD"))
            await session.commit()

    async def run(self):
        await self.setup()

        self.print_header("Trial period (2012-04-01)")
        result = await self.generator.generate_invoice(ACCOUNT_ID, date(2012, 4, 1))
        print(f"✅ Cycle finished with {result.status.value}")

        self.print_header("Account credit of $10")
        credit = InvoiceItem(account_id=ACCOUNT_ID, item_type=InvoiceItemType.CREDIT_ADJ, amount=Decimal("10"),
                             currency="USD", start_date=date(2012, 4, 1), description="Welcome credit")
        await self.invoice_api.insert_credits(ACCOUNT_ID, date(2012, 4, 1), [credit])

        self.print_header("First billing, one invoice per subscription (2012-05-01)")
        self.plugin.assign(ACCOUNT_ID, {"blowdart-monthly": 0, "pistol-monthly": 1})
        result = await self.generator.generate_invoice(ACCOUNT_ID, date(2012, 5, 1))
        print(f"✅ Cycle finished with {result.status.value}")

        self.print_header("Account invoices")
        self.print_invoices(await self.invoice_api.get_invoices_by_account(ACCOUNT_ID))
        print(f"\nℹ️  {len(self.events)} events published")
        await engine.dispose()


async def main():
    """Main demo execution function."""
    demo = InvoiceGroupingDemo()
    await demo.run()


if __name__ == "__main__":
    asyncio.run(main())

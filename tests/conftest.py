import os
import sys
import tempfile
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

# Must be set before src.config creates the engine
os.environ["DATABASE_URL"] = os.getenv(
    "TEST_DATABASE_URL",
    f"sqlite+aiosqlite:///{Path(tempfile.gettempdir()) / f'invoicing-tests-{os.getpid()}.db'}",
)

import pytest
import pytest_asyncio

from tests.unit.test_config import (
    TestAsyncSession,
    RecordingPublisher,
    StaticDraftBuilder,
    cleanup_database,
    test_engine,
)
from src.services.grouping import SubscriptionGroupingPlugin
from src.services.invoice_events import InvoiceEventNotifier
from src.services.invoice_generator import AccountLockManager, InvoiceGenerator
from src.services.invoice_plugin import InvoicePluginRegistry

PLUGIN_NAME = "subscription-grouping"


@pytest_asyncio.fixture(scope="function")
async def setup_database():
    await cleanup_database()
    yield
    await test_engine.dispose()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def notifier(publisher):
    return InvoiceEventNotifier(publisher)


@pytest.fixture
def draft_builder():
    return StaticDraftBuilder()


@pytest.fixture
def grouping_plugin():
    return SubscriptionGroupingPlugin()


@pytest.fixture
def plugin_registry(grouping_plugin):
    registry = InvoicePluginRegistry()
    registry.register_service(PLUGIN_NAME, grouping_plugin)
    return registry


@pytest.fixture
def account_locks():
    return AccountLockManager()


@pytest.fixture
def generator(draft_builder, plugin_registry, notifier, account_locks):
    return InvoiceGenerator(
        TestAsyncSession,
        draft_builder,
        plugin_registry,
        PLUGIN_NAME,
        notifier=notifier,
        locks=account_locks,
    )

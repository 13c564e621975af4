"""
Invoice plugin hook.

A plugin is consulted at three points of every generation cycle:

- ``prior_call`` before anything is computed; it may abort the cycle or
  defer it to a later date.
- ``get_additional_invoice_items`` with the draft invoice; the returned
  items replace the draft's items. Items carrying a different
  ``invoice_id`` than the draft are moved to a new invoice.
- ``on_success_call`` / ``on_failure_call`` once the cycle is over.

Plugins are plain in-process objects looked up by name in an
``InvoicePluginRegistry`` owned by the caller.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Sequence
import logging

from src.models.invoice import (
    CallContext,
    Invoice,
    InvoiceContext,
    InvoiceItem,
    PluginProperty,
    PriorInvoiceResult,
)

logger = logging.getLogger(__name__)


class InvoicePluginNotFoundError(LookupError):
    """Raised when no plugin is registered under the requested name."""
    pass


class InvoicePluginApi(ABC):
    """Contract implemented by invoice plugins."""

    @abstractmethod
    def prior_call(self, context: InvoiceContext, properties: Iterable[PluginProperty]) -> PriorInvoiceResult:
        """
        Gate the generation cycle.

        Args:
            context: Account and target date of the cycle
            properties: Plugin properties supplied by the caller

        Returns:
            Whether to abort the cycle or reschedule it
        """
        pass

    @abstractmethod
    def get_additional_invoice_items(
        self,
        invoice: Invoice,
        is_dry_run: bool,
        properties: Iterable[PluginProperty],
        call_context: CallContext,
    ) -> Sequence[InvoiceItem]:
        """
        Rewrite the draft invoice items.

        Args:
            invoice: The draft invoice
            is_dry_run: True when the result is only previewed
            properties: Plugin properties supplied by the caller
            call_context: Context of the triggering call

        Returns:
            The item list to use from now on; empty means no change
        """
        pass

    def on_success_call(self, context: InvoiceContext, properties: Iterable[PluginProperty]):
        return None

    def on_failure_call(self, context: InvoiceContext, properties: Iterable[PluginProperty]):
        return None


class PassThroughInvoicePlugin(InvoicePluginApi):
    """Plugin that never aborts and never rewrites."""

    def prior_call(self, context, properties):
        return PriorInvoiceResult()

    def get_additional_invoice_items(self, invoice, is_dry_run, properties, call_context):
        return []


class InvoicePluginRegistry:
    """
    Name-keyed registry of invoice plugins.

    One registry is created by the application and injected where needed.
    """

    def __init__(self):
        self._services: Dict[str, InvoicePluginApi] = {}

    def register_service(self, name: str, plugin: InvoicePluginApi) -> None:
        if name in self._services:
            logger.warning(f"Replacing invoice plugin registered as {name}")
        self._services[name] = plugin
        logger.info(f"Registered invoice plugin {name}")

    def unregister_service(self, name: str) -> Optional[InvoicePluginApi]:
        plugin = self._services.pop(name, None)
        if plugin is not None:
            logger.info(f"Unregistered invoice plugin {name}")
        return plugin

    def get_service(self, name: str) -> InvoicePluginApi:
        try:
            return self._services[name]
        except KeyError:
            raise InvoicePluginNotFoundError(f"No invoice plugin registered as {name}") from None

    def get_all_services(self) -> List[str]:
        return sorted(self._services)

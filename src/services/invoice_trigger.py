from datetime import date
from typing import Any, Dict, List
import json
import logging

from sqlalchemy.ext.asyncio import async_sessionmaker

from src.models.invoice import CallContext, GenerationResult
from src.services.invoice_generator import InvoiceGenerator
from src.services.invoice_repository import InvoiceRepository

logger = logging.getLogger(__name__)


class InvoiceTriggerConsumer:
    """
    Consumer for billing triggers published on the invoice trigger queue.

    Message payload: {"account_id": ..., "target_date": "YYYY-MM-DD"}
    """

    def __init__(self, generator: InvoiceGenerator):
        self.generator = generator

    async def process_trigger_message(self, message_body: Dict[str, Any]) -> GenerationResult:
        """
        Run a generation cycle for a trigger message.

        Args:
            message_body: The message payload from RabbitMQ
        """
        try:
            account_id = message_body["account_id"]
            target_date = date.fromisoformat(message_body["target_date"])
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Malformed invoice trigger message {message_body}: {e}") from e

        logger.info(f"Processing invoice trigger for account {account_id} on {target_date}")
        result = await self.generator.generate_invoice(
            account_id,
            target_date,
            call_context=CallContext(created_by="invoice-trigger"),
        )
        logger.info(f"Invoice trigger for account {account_id} finished with {result.status.value}")
        return result


class InvoiceTriggerRunner:
    """Replays generation cycles that a plugin deferred to a later date."""

    def __init__(self, session_factory: async_sessionmaker, generator: InvoiceGenerator):
        self.session_factory = session_factory
        self.generator = generator

    async def run_due_triggers(self, as_of: date) -> List[GenerationResult]:
        async with self.session_factory() as session:
            repo = InvoiceRepository(session)
            triggers = await repo.get_due_triggers(as_of)
            pending = [(trigger.id, trigger.account_id, trigger.target_date) for trigger in triggers]

        results = []
        for trigger_id, account_id, target_date in pending:
            try:
                result = await self.generator.generate_invoice(
                    account_id,
                    max(target_date, as_of),
                    call_context=CallContext(created_by="invoice-reschedule"),
                    is_rescheduled=True,
                )
            except Exception as e:
                logger.error(f"Replay of invoice trigger {trigger_id} for account {account_id} failed, kept pending: {e}")
                continue

            # A replay deferred again has recorded its own trigger
            async with self.session_factory() as session:
                await InvoiceRepository(session).mark_trigger_processed(trigger_id)
            results.append(result)
        return results


async def setup_invoice_trigger_consumer(generator: InvoiceGenerator):
    """
    Setup the RabbitMQ consumer for invoice triggers.
    This would typically be called during application startup.
    """
    try:
        from src.config import get_rabbit_connection, INVOICE_TRIGGER_QUEUE

        connection = await get_rabbit_connection()
        channel = await connection.channel()
        trigger_queue = await channel.get_queue(INVOICE_TRIGGER_QUEUE)
        consumer = InvoiceTriggerConsumer(generator)

        async def message_handler(message):
            """Handle incoming invoice triggers"""
            try:
                message_body = json.loads(message.body.decode())
                await consumer.process_trigger_message(message_body)
                await message.ack()

            except Exception as e:
                logger.error(f"Failed to process invoice trigger: {e}")
                await message.nack(requeue=False)

        await trigger_queue.consume(message_handler)

        logger.info("Invoice trigger consumer started")

    except Exception as e:
        logger.error(f"Failed to setup invoice trigger consumer: {e}")
        raise

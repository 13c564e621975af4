from fastapi import FastAPI, Depends, HTTPException
from pydantic import BaseModel, Field
from src.config import async_session, INVOICE_PLUGIN_NAME
from sqlalchemy import text
from src.models.invoice import InvoiceItem, InvoiceItemType, InvoiceStatus
from src.services.grouping import SubscriptionGroupingPlugin
from src.services.invoice_api import InvoiceUserApi
from src.services.invoice_generator import AccountLockManager
from src.services.invoice_plugin import InvoicePluginRegistry
from src.services.invoice_repository import AccountNotFoundError
from datetime import date
from decimal import Decimal
from typing import Optional, Dict, List
import logging

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Invoicing API",
    description="Invoice generation with plugin-driven invoice grouping",
    version="1.0.0",
    openapi_url="/api/openapi.json",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
)

# Shared by every generation cycle and API call of this process
account_locks = AccountLockManager()
plugin_registry = InvoicePluginRegistry()
grouping_plugin = SubscriptionGroupingPlugin()
plugin_registry.register_service(INVOICE_PLUGIN_NAME, grouping_plugin)


# Pydantic Models for API documentation
class HealthStatus(BaseModel):
    status: str
    db: str


class SuccessResponse(BaseModel):
    success: bool


class InvoiceResponse(BaseModel):
    id: str
    account_id: str
    invoice_number: Optional[int]
    invoice_date: date
    target_date: date
    currency: str
    status: InvoiceStatus
    balance: Decimal
    items: List[InvoiceItem]


class CreditRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, description="Credit granted to the account")
    currency: str = Field(..., min_length=3, max_length=3)
    effective_date: date
    description: Optional[str] = None
    auto_commit: bool = True


class GroupAssignmentRequest(BaseModel):
    subscription_to_group: Dict[str, int] = Field(..., description="Subscription id to 0-based group index")


class GroupAssignmentResponse(BaseModel):
    account_id: str
    subscription_to_group: Dict[str, int]


def _invoice_response(invoice) -> InvoiceResponse:
    return InvoiceResponse(
        id=invoice.id,
        account_id=invoice.account_id,
        invoice_number=invoice.invoice_number,
        invoice_date=invoice.invoice_date,
        target_date=invoice.target_date,
        currency=invoice.currency,
        status=invoice.status,
        balance=invoice.balance,
        items=list(invoice.items),
    )


# Dependencies
def get_invoice_api() -> InvoiceUserApi:
    return InvoiceUserApi(async_session, locks=account_locks)


def get_grouping_plugin() -> SubscriptionGroupingPlugin:
    return grouping_plugin


@app.get("/health", tags=["System"], response_model=HealthStatus)
async def health_check():
    """Check API and database connection status."""
    async with async_session() as session:
        await session.execute(text("SELECT 1"))
        return {"status": "ok", "db": "connected"}


@app.get("/accounts/{account_id}/invoices", tags=["Invoices"], response_model=List[InvoiceResponse])
async def get_invoices(
    account_id: str,
    include_voided: bool = False,
    include_draft: bool = False,
    invoice_api: InvoiceUserApi = Depends(get_invoice_api),
):
    """List the invoices of an account by invoice number."""
    try:
        invoices = await invoice_api.get_invoices_by_account(account_id, include_voided, include_draft)
    except AccountNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return [_invoice_response(invoice) for invoice in invoices]


@app.post("/accounts/{account_id}/credits", tags=["Invoices"], response_model=InvoiceResponse)
async def insert_credit(
    account_id: str,
    request: CreditRequest,
    invoice_api: InvoiceUserApi = Depends(get_invoice_api),
):
    """Grant account credit, consumed by the next invoices."""
    try:
        credit = InvoiceItem(
            account_id=account_id,
            item_type=InvoiceItemType.CREDIT_ADJ,
            amount=request.amount,
            currency=request.currency,
            start_date=request.effective_date,
            description=request.description,
        )
        invoice = await invoice_api.insert_credits(
            account_id, request.effective_date, [credit], auto_commit=request.auto_commit
        )
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _invoice_response(invoice)


@app.post("/accounts/{account_id}/invoices/{invoice_id}/void", tags=["Invoices"], response_model=InvoiceResponse)
async def void_invoice(
    account_id: str,
    invoice_id: str,
    invoice_api: InvoiceUserApi = Depends(get_invoice_api),
):
    """Void a committed invoice."""
    try:
        invoice = await invoice_api.void_invoice(account_id, invoice_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _invoice_response(invoice)


@app.get("/accounts/{account_id}/invoice_groups", tags=["Invoice Groups"], response_model=GroupAssignmentResponse)
async def get_invoice_groups(account_id: str, plugin: SubscriptionGroupingPlugin = Depends(get_grouping_plugin)):
    """Show how the account's subscriptions are grouped into invoices."""
    return {"account_id": account_id, "subscription_to_group": plugin.assignment_for(account_id)}


@app.put("/accounts/{account_id}/invoice_groups", tags=["Invoice Groups"], response_model=GroupAssignmentResponse)
async def set_invoice_groups(
    account_id: str,
    request: GroupAssignmentRequest,
    plugin: SubscriptionGroupingPlugin = Depends(get_grouping_plugin),
):
    """Put each group of subscriptions on its own invoice from the next cycle on."""
    try:
        plugin.assign(account_id, request.subscription_to_group)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    logger.info(f"Updated invoice groups of account {account_id}")
    return {"account_id": account_id, "subscription_to_group": plugin.assignment_for(account_id)}


@app.delete("/accounts/{account_id}/invoice_groups", tags=["Invoice Groups"], response_model=SuccessResponse)
async def clear_invoice_groups(account_id: str, plugin: SubscriptionGroupingPlugin = Depends(get_grouping_plugin)):
    """Go back to a single invoice per cycle."""
    plugin.clear(account_id)
    return {"success": True}

from sqlalchemy import Column, String, Integer, Numeric, Boolean, Date, DateTime, Enum, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship, declarative_base
from datetime import datetime

Base = declarative_base()


class Account(Base):
    __tablename__ = "account"
    id = Column(String, primary_key=True)
    name = Column(String)
    currency = Column(String(3), nullable=False, default="USD")
    created_at = Column(DateTime, default=datetime.utcnow)
    invoices = relationship("InvoiceRecord", back_populates="account")


class InvoiceRecord(Base):
    __tablename__ = "invoice"
    __table_args__ = (
        UniqueConstraint("account_id", "invoice_number", name="uq_invoice_account_number"),
    )
    id = Column(String, primary_key=True)
    account_id = Column(String, ForeignKey("account.id"), nullable=False, index=True)
    invoice_number = Column(Integer, nullable=False)
    invoice_date = Column(Date, nullable=False)
    target_date = Column(Date, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(Enum("DRAFT", "COMMITTED", "VOID", name="invoicestatusenum"), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    account = relationship("Account", back_populates="invoices")
    items = relationship(
        "InvoiceItemRecord",
        back_populates="invoice",
        order_by="InvoiceItemRecord.position",
        cascade="all, delete-orphan",
    )


class InvoiceItemRecord(Base):
    __tablename__ = "invoice_item"
    id = Column(String, primary_key=True)
    invoice_id = Column(String, ForeignKey("invoice.id"), nullable=False, index=True)
    account_id = Column(String, ForeignKey("account.id"), nullable=False)
    subscription_id = Column(String, nullable=True)
    item_type = Column(
        Enum("FIXED", "RECURRING", "USAGE", "CREDIT_ADJ", "CBA_ADJ", "ITEM_ADJ", "TAX", "EXTERNAL_CHARGE",
             name="invoiceitemtypeenum"),
        nullable=False,
    )
    amount = Column(Numeric(15, 4), nullable=False)
    currency = Column(String(3), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    description = Column(String)
    position = Column(Integer, nullable=False, default=0)
    invoice = relationship("InvoiceRecord", back_populates="items")


class InvoiceTrigger(Base):
    __tablename__ = "invoice_trigger"
    id = Column(String, primary_key=True)
    account_id = Column(String, ForeignKey("account.id"), nullable=False, index=True)
    target_date = Column(Date, nullable=False)
    effective_date = Column(Date, nullable=False)
    processed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)

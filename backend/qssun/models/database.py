"""
Database models for the Qssun back-office API.
"""

from enum import Enum

from sqlalchemy import (
    Boolean, Date, DateTime, Integer, String, Text, Numeric,
    ForeignKey, Column, Index, CheckConstraint
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func


Base = declarative_base()


class UserRole(str, Enum):
    """User role enumeration."""
    ADMIN = "admin"
    EMPLOYEE = "employee"


class SheetStatus(str, Enum):
    """Custody sheet status enumeration."""
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class QuotationCategory(str, Enum):
    """Quotation item tiers, best first."""
    BEST = "الأفضل"
    GOOD = "الجيد"
    ECONOMY = "الاقتصادي"
    MINIMUM = "الأدنى"


# Display order of quotation item tiers
CATEGORY_ORDER = [c.value for c in QuotationCategory]


class User(Base):
    """Application user (identity only; authentication happens upstream)."""
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(100), unique=True, nullable=False, index=True)
    full_name = Column(String(150))
    role = Column(String(20), nullable=False, default=UserRole.EMPLOYEE.value)
    has_purchase_management_permission = Column(
        Boolean, nullable=False, default=False, server_default="0")
    created_at = Column(DateTime(timezone=True),
                        server_default=func.now(), nullable=False)


class Quotation(Base):
    """Customer quotation header."""
    __tablename__ = 'quotations'

    id = Column(Integer, primary_key=True, autoincrement=True)
    quote_number = Column(String(64), unique=True, nullable=False, index=True)
    quote_date = Column(Date, nullable=False)
    customer_name = Column(String(200), nullable=False)
    location = Column(String(200))
    mobile = Column(String(32))
    created_at = Column(DateTime(timezone=True),
                        server_default=func.now(), nullable=False)

    items = relationship("QuotationItem", back_populates="quotation",
                         cascade="all, delete-orphan")

    __table_args__ = (
        Index('idx_quotation_created_date', 'created_at', 'quote_date'),
    )


class QuotationItem(Base):
    """Quotation line: one pricing tier for a given motor size."""
    __tablename__ = 'quotation_items'

    id = Column(Integer, primary_key=True, autoincrement=True)
    quotation_id = Column(Integer, ForeignKey(
        'quotations.id', ondelete="CASCADE"), nullable=False, index=True)
    category = Column(String(32), nullable=False,
                      default=QuotationCategory.ECONOMY.value)
    horsepower = Column(String(32))
    capacity_kw = Column(Numeric(12, 3))
    price_per_kw = Column(Numeric(12, 2))
    total_before_tax = Column(Numeric(14, 2))
    vat15 = Column(Numeric(14, 2))
    total_with_tax = Column(Numeric(14, 2))

    quotation = relationship("Quotation", back_populates="items")


class InstantExpenseSheet(Base):
    """Custody sheet: an amount handed to an employee and spent line by line."""
    __tablename__ = 'instant_expense_sheets'

    id = Column(String(32), primary_key=True)
    custody_number = Column(String(32), unique=True, index=True)
    custody_amount = Column(Numeric(14, 2), nullable=False, default=0)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    status = Column(String(16), nullable=False, default=SheetStatus.OPEN.value)
    notes = Column(Text)
    created_at = Column(DateTime(timezone=True),
                        server_default=func.now(), nullable=False)
    last_modified = Column(DateTime(timezone=True),
                           server_default=func.now(), nullable=False)

    lines = relationship("InstantExpenseLine", back_populates="sheet",
                         cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint("status IN ('OPEN', 'CLOSED')",
                        name='check_valid_sheet_status'),
        Index('idx_sheet_last_modified', 'last_modified'),
    )


class InstantExpenseLine(Base):
    """Single expense booked against a custody sheet."""
    __tablename__ = 'instant_expense_lines'

    id = Column(String(32), primary_key=True)
    sheet_id = Column(String(32), ForeignKey(
        'instant_expense_sheets.id', ondelete="CASCADE"), nullable=False, index=True)
    date = Column(Date)
    company = Column(String(200))
    invoice_number = Column(String(100))
    description = Column(Text)
    reason = Column(Text, nullable=False)
    amount = Column(Numeric(14, 2), nullable=False, default=0)
    bank_fees = Column(Numeric(14, 2))
    buyer_name = Column(String(150))
    notes = Column(Text)
    created_at = Column(DateTime(timezone=True),
                        server_default=func.now(), nullable=False)

    sheet = relationship("InstantExpenseSheet", back_populates="lines")


class Notification(Base):
    """In-app notification shown in the user's bell menu."""
    __tablename__ = 'notifications'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    message = Column(Text, nullable=False)
    link = Column(String(512))
    is_read = Column(Boolean, nullable=False, default=False, server_default="0")
    created_at = Column(DateTime(timezone=True),
                        server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('idx_notification_user_created', 'user_id', 'created_at'),
    )


class WebPushSubscription(Base):
    """Browser push subscription (one per user/endpoint pair)."""
    __tablename__ = 'web_push_subscriptions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    endpoint = Column(String(1024), nullable=False)
    keys_auth = Column(String(255))
    keys_p256dh = Column(String(255))
    raw = Column(Text)
    created_at = Column(DateTime(timezone=True),
                        server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(
    ), onupdate=func.now(), nullable=False)

    # utf8mb4 keys are capped at 767 bytes on MySQL: index a 191-char prefix
    __table_args__ = (
        Index('uniq_user_endpoint', 'user_id', 'endpoint', unique=True,
              mysql_length={'endpoint': 191}),
    )


class SerialDaySequence(Base):
    """Per-day counter backing the daily serial allocator."""
    __tablename__ = 'serial_day_sequences'

    date_key = Column(String(8), primary_key=True)
    last_seq = Column(Integer, nullable=False, default=0, server_default="0")
    updated_at = Column(DateTime(timezone=True), server_default=func.now(
    ), onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint('length(date_key) = 8', name='ck_day_seq_date_len'),
        CheckConstraint('last_seq >= 0', name='ck_day_seq_non_negative'),
    )

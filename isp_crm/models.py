from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from isp_crm.db import Base

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")
MONEY = Numeric(12, 2)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Tenant(Base):
    __tablename__ = "tenant"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="ACTIVE")
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class User(Base):
    __tablename__ = "app_user"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("tenant.id"))
    name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    phone: Mapped[str | None] = mapped_column(String(32), unique=True)
    role: Mapped[str] = mapped_column(Text, nullable=False, default="support")
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class RevokedToken(Base):
    __tablename__ = "revoked_token"

    jti: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("app_user.id"), nullable=False)
    revoked_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class AppSetting(Base):
    __tablename__ = "app_setting"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[Any] = mapped_column(JSON_TYPE)
    category: Mapped[str] = mapped_column(Text, nullable=False, default="general")
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Customer(Base):
    __tablename__ = "customer"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("tenant.id"))
    name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), unique=True)
    phone: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    account_type: Mapped[str] = mapped_column(Text, nullable=False, default="residential")
    status: Mapped[str] = mapped_column(Text, nullable=False, default="active")
    registered_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Ticket(Base):
    __tablename__ = "ticket"
    __table_args__ = (
        Index("ix_ticket_customer", "customer_id"),
        Index("ix_ticket_status", "status"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("tenant.id"))
    ticket_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    customer_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("customer.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("app_user.id"))
    subject: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False, default="general")
    priority: Mapped[str] = mapped_column(Text, nullable=False, default="medium")
    status: Mapped[str] = mapped_column(Text, nullable=False, default="open")
    resolution: Mapped[str | None] = mapped_column(Text)
    resolved_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class TicketReply(Base):
    __tablename__ = "ticket_reply"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    ticket_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("ticket.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("app_user.id"), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    is_internal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Lead(Base):
    __tablename__ = "lead"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("tenant.id"))
    name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str | None] = mapped_column(String(255))
    phone: Mapped[str] = mapped_column(String(32), nullable=False)
    company: Mapped[str | None] = mapped_column(Text)
    source: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="new")
    notes: Mapped[str | None] = mapped_column(Text)
    converted_ticket_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("ticket.id"))
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Department(Base):
    __tablename__ = "department"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text)
    manager: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class TeamGroup(Base):
    __tablename__ = "team_group"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text)
    department_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("department.id"))
    manager: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Employee(Base):
    __tablename__ = "employee"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("tenant.id"))
    user_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("app_user.id"))
    first_name: Mapped[str] = mapped_column(Text, nullable=False)
    last_name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    phone: Mapped[str] = mapped_column(String(32), nullable=False)
    position: Mapped[str | None] = mapped_column(Text)
    department: Mapped[str | None] = mapped_column(Text)
    salary: Mapped[Numeric | None] = mapped_column(MONEY)
    hire_date: Mapped[Date | None] = mapped_column(Date)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="active")
    emergency_contact: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class TeamMember(Base):
    __tablename__ = "team_member"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    employee_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("employee.id", ondelete="CASCADE"), nullable=False
    )
    department_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("department.id"))
    team_group_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("team_group.id"))
    role: Mapped[str] = mapped_column(Text, nullable=False, default="Member")
    joined_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class AttendanceRecord(Base):
    __tablename__ = "attendance_record"
    __table_args__ = (
        CheckConstraint(
            "status IN ('present', 'absent', 'late', 'half-day')", name="ck_attendance_status"
        ),
        Index("ix_attendance_employee_date", "employee_id", "date"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    employee_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("employee.id", ondelete="CASCADE"), nullable=False
    )
    date: Mapped[Date] = mapped_column(Date, nullable=False)
    check_in_time: Mapped[str | None] = mapped_column(String(16))
    check_out_time: Mapped[str | None] = mapped_column(String(16))
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class LeaveRequest(Base):
    __tablename__ = "leave_request"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    employee_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("employee.id", ondelete="CASCADE"), nullable=False
    )
    leave_type: Mapped[str] = mapped_column(Text, nullable=False)
    start_date: Mapped[Date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Date] = mapped_column(Date, nullable=False)
    days: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    reviewed_by: Mapped[str | None] = mapped_column(Text)
    reviewed_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class PayrollRecord(Base):
    __tablename__ = "payroll_record"
    __table_args__ = (Index("ix_payroll_employee_period", "employee_id", "period", unique=True),)

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    employee_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("employee.id", ondelete="CASCADE"), nullable=False
    )
    period: Mapped[str] = mapped_column(String(7), nullable=False)
    base_salary: Mapped[Numeric] = mapped_column(MONEY, nullable=False, default=0)
    allowances: Mapped[Numeric] = mapped_column(MONEY, nullable=False, default=0)
    bonus: Mapped[Numeric] = mapped_column(MONEY, nullable=False, default=0)
    deductions: Mapped[Numeric] = mapped_column(MONEY, nullable=False, default=0)
    tax: Mapped[Numeric] = mapped_column(MONEY, nullable=False, default=0)
    net_salary: Mapped[Numeric] = mapped_column(MONEY, nullable=False, default=0)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    paid_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSON_TYPE)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class PerformanceReview(Base):
    __tablename__ = "performance_review"
    __table_args__ = (CheckConstraint("rating >= 1 AND rating <= 5", name="ck_review_rating"),)

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    employee_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("employee.id", ondelete="CASCADE"), nullable=False
    )
    reviewer: Mapped[str | None] = mapped_column(Text)
    review_period: Mapped[str] = mapped_column(Text, nullable=False)
    rating: Mapped[Numeric] = mapped_column(Numeric(2, 1), nullable=False)
    goals: Mapped[str | None] = mapped_column(Text)
    comments: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="draft")
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class InventoryItem(Base):
    __tablename__ = "inventory_item"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    sku: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    category: Mapped[str | None] = mapped_column(Text)
    unit_price: Mapped[Numeric] = mapped_column(MONEY, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reorder_level: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class InventoryTransaction(Base):
    __tablename__ = "inventory_transaction"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    receipt_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    customer_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("customer.id"))
    customer_name: Mapped[str | None] = mapped_column(Text)
    subtotal: Mapped[Numeric] = mapped_column(MONEY, nullable=False)
    tax_amount: Mapped[Numeric] = mapped_column(MONEY, nullable=False, default=0)
    discount_amount: Mapped[Numeric] = mapped_column(MONEY, nullable=False, default=0)
    total_amount: Mapped[Numeric] = mapped_column(MONEY, nullable=False)
    payment_method: Mapped[str] = mapped_column(Text, nullable=False)
    payment_status: Mapped[str] = mapped_column(Text, nullable=False, default="completed")
    cashier: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class InventoryTransactionLine(Base):
    __tablename__ = "inventory_transaction_line"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    transaction_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("inventory_transaction.id", ondelete="CASCADE"), nullable=False
    )
    item_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("inventory_item.id"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Numeric] = mapped_column(MONEY, nullable=False)
    line_total: Mapped[Numeric] = mapped_column(MONEY, nullable=False)


class MikrotikPlan(Base):
    __tablename__ = "mikrotik_plan"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    instance_id: Mapped[str] = mapped_column(String(64), nullable=False, default="default")
    plan_name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    plan_type: Mapped[str] = mapped_column(Text, nullable=False)
    monthly_fee: Mapped[Numeric] = mapped_column(MONEY, nullable=False)
    setup_fee: Mapped[Numeric] = mapped_column(MONEY, nullable=False, default=0)
    activation_fee: Mapped[Numeric] = mapped_column(MONEY, nullable=False, default=0)
    discount: Mapped[Numeric] = mapped_column(Numeric(5, 2), nullable=False, default=0)
    data_quota: Mapped[int | None] = mapped_column(Integer)
    download_mbps: Mapped[int | None] = mapped_column(Integer)
    upload_mbps: Mapped[int | None] = mapped_column(Integer)
    features: Mapped[list | None] = mapped_column(JSON_TYPE)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class MikrotikAccount(Base):
    __tablename__ = "mikrotik_account"
    __table_args__ = (Index("ix_mikrotik_account_instance", "instance_id"),)

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("tenant.id"))
    instance_id: Mapped[str] = mapped_column(String(64), nullable=False, default="default")
    account_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    customer_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("customer.id"))
    customer_name: Mapped[str] = mapped_column(Text, nullable=False)
    customer_email: Mapped[str | None] = mapped_column(String(255))
    customer_phone: Mapped[str] = mapped_column(String(32), nullable=False)
    account_type: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="active")
    plan_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("mikrotik_plan.id"), nullable=False)
    monthly_fee: Mapped[Numeric] = mapped_column(MONEY, nullable=False)
    data_quota: Mapped[int | None] = mapped_column(Integer)
    balance: Mapped[Numeric] = mapped_column(MONEY, nullable=False, default=0)
    total_paid: Mapped[Numeric] = mapped_column(MONEY, nullable=False, default=0)
    outstanding_balance: Mapped[Numeric] = mapped_column(MONEY, nullable=False, default=0)
    registration_date: Mapped[Date] = mapped_column(Date, nullable=False)
    last_billing_date: Mapped[Date | None] = mapped_column(Date)
    next_billing_date: Mapped[Date | None] = mapped_column(Date)
    pppoe_username: Mapped[str] = mapped_column(Text, nullable=False)
    pppoe_password: Mapped[str] = mapped_column(Text, nullable=False)
    hotspot_username: Mapped[str] = mapped_column(Text, nullable=False)
    hotspot_password: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class MikrotikInvoice(Base):
    __tablename__ = "mikrotik_invoice"
    __table_args__ = (Index("ix_mikrotik_invoice_account", "account_id"),)

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    invoice_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    account_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("mikrotik_account.id", ondelete="CASCADE"), nullable=False
    )
    plan_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("mikrotik_plan.id"), nullable=False)
    billing_period: Mapped[str] = mapped_column(String(7), nullable=False)
    amount: Mapped[Numeric] = mapped_column(MONEY, nullable=False)
    discount: Mapped[Numeric] = mapped_column(MONEY, nullable=False, default=0)
    tax: Mapped[Numeric] = mapped_column(MONEY, nullable=False, default=0)
    total: Mapped[Numeric] = mapped_column(MONEY, nullable=False)
    amount_paid: Mapped[Numeric] = mapped_column(MONEY, nullable=False, default=0)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="issued")
    issue_date: Mapped[Date] = mapped_column(Date, nullable=False)
    due_date: Mapped[Date] = mapped_column(Date, nullable=False)
    paid_date: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    payment_method: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Payment(Base):
    __tablename__ = "payment"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_amount_positive"),
        Index("ix_payment_account", "account_id"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("tenant.id"))
    account_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("mikrotik_account.id", ondelete="CASCADE"), nullable=False
    )
    invoice_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("mikrotik_invoice.id"))
    customer_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("customer.id"))
    user_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("app_user.id"))
    amount: Mapped[Numeric] = mapped_column(MONEY, nullable=False)
    payment_method: Mapped[str] = mapped_column(Text, nullable=False)
    mpesa_receipt_number: Mapped[str | None] = mapped_column(String(64))
    transaction_id: Mapped[str | None] = mapped_column(String(128))
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payment_date: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class MikrotikUsage(Base):
    __tablename__ = "mikrotik_usage"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("mikrotik_account.id", ondelete="CASCADE"), nullable=False
    )
    date: Mapped[Date] = mapped_column(Date, nullable=False)
    upload_mb: Mapped[Numeric] = mapped_column(Numeric(14, 2), nullable=False)
    download_mb: Mapped[Numeric] = mapped_column(Numeric(14, 2), nullable=False)
    total_mb: Mapped[Numeric] = mapped_column(Numeric(14, 2), nullable=False)
    session_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    active_time: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class ExpirationLog(Base):
    __tablename__ = "expiration_log"
    __table_args__ = (Index("ix_expiration_log_instance", "instance_id", "id"),)

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    instance_id: Mapped[str] = mapped_column(String(64), nullable=False, default="default")
    account_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    account_number: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_name: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    details: Mapped[str] = mapped_column(Text, nullable=False)
    next_billing_date: Mapped[Date | None] = mapped_column(Date)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class MpesaTransaction(Base):
    __tablename__ = "mpesa_transaction"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    transaction_type: Mapped[str] = mapped_column(String(16), nullable=False)
    checkout_request_id: Mapped[str | None] = mapped_column(String(128), unique=True)
    phone_number: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[Numeric] = mapped_column(MONEY, nullable=False)
    account_reference: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    result_code: Mapped[int | None] = mapped_column(Integer)
    result_description: Mapped[str | None] = mapped_column(Text)
    mpesa_receipt_number: Mapped[str | None] = mapped_column(String(64))
    payment_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("payment.id"))
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class SmsLog(Base):
    __tablename__ = "sms_log"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    recipients: Mapped[list] = mapped_column(JSON_TYPE, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    message_ids: Mapped[list | None] = mapped_column(JSON_TYPE)
    error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

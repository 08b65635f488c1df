"""
Billing rules for Mikrotik subscriber accounts.

Invoice arithmetic, PPPoE/hotspot credential generation and payment
application. Nothing here commits: callers own the transaction so that a
payment row, the invoices it settles and the account balances land together
or not at all.
"""

import secrets
import string
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from isp_crm.config import settings
from isp_crm.logging_config import get_logger
from isp_crm.models import MikrotikAccount, MikrotikInvoice, MikrotikPlan, utcnow

logger = get_logger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0")
OPEN_INVOICE_STATUSES = ("issued", "partially_paid", "overdue")
PASSWORD_ALPHABET = string.ascii_letters + string.digits
PASSWORD_LENGTH = 12

DEFAULT_PLANS = [
    {
        "plan_name": "Basic Residential",
        "description": "Perfect for home users",
        "plan_type": "flat-rate",
        "monthly_fee": Decimal("1500"),
        "setup_fee": ZERO,
        "activation_fee": Decimal("500"),
        "discount": ZERO,
        "download_mbps": 10,
        "upload_mbps": 5,
        "features": ["10Mbps Download", "5Mbps Upload", "Unlimited Data"],
    },
    {
        "plan_name": "Premium Business",
        "description": "For small businesses",
        "plan_type": "flat-rate",
        "monthly_fee": Decimal("5000"),
        "setup_fee": Decimal("1000"),
        "activation_fee": Decimal("2000"),
        "discount": Decimal("5"),
        "download_mbps": 50,
        "upload_mbps": 20,
        "features": ["50Mbps Download", "20Mbps Upload", "Priority Support"],
    },
    {
        "plan_name": "Quota Prepaid",
        "description": "Pay as you use - 10GB",
        "plan_type": "quota-based",
        "monthly_fee": Decimal("500"),
        "setup_fee": ZERO,
        "activation_fee": ZERO,
        "discount": ZERO,
        "data_quota": 10,
        "download_mbps": 5,
        "upload_mbps": 2,
        "features": ["10GB Monthly Data", "Pay Per Use"],
    },
]


def money(value) -> Decimal:
    if value is None:
        return ZERO
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def generate_credentials(account_number: str) -> dict:
    return {
        "pppoe_username": account_number,
        "pppoe_password": generate_password(),
        "hotspot_username": f"hs_{account_number}",
        "hotspot_password": generate_password(),
    }


def ensure_default_plans(db: Session, instance_id: str) -> None:
    exists = db.query(MikrotikPlan.id).filter(MikrotikPlan.instance_id == instance_id).first()
    if exists:
        return
    for plan in DEFAULT_PLANS:
        db.add(MikrotikPlan(instance_id=instance_id, is_active=True, **plan))
    db.flush()
    logger.info("Seeded default billing plans for instance %s", instance_id)


def next_account_number(db: Session, prefix: str) -> str:
    last_id = db.query(func.max(MikrotikAccount.id)).scalar() or 0
    return f"{prefix}-{1000 + last_id + 1}"


def next_invoice_number(db: Session) -> str:
    last_id = db.query(func.max(MikrotikInvoice.id)).scalar() or 0
    return f"INV-{1000 + last_id + 1}"


def invoice_totals(
    amount, discount_percent, vat_rate: Optional[Decimal] = None
) -> tuple[Decimal, Decimal, Decimal, Decimal]:
    """Return (amount, discount, tax, total); VAT is charged on the discounted amount."""
    rate = settings.vat_rate if vat_rate is None else Decimal(str(vat_rate))
    amount = money(amount)
    discount = money(amount * Decimal(str(discount_percent or 0)) / Decimal("100"))
    tax = money((amount - discount) * rate)
    total = money(amount - discount + tax)
    return amount, discount, tax, total


def generate_invoice(
    db: Session,
    account: MikrotikAccount,
    plan: MikrotikPlan,
    billing_period: Optional[str] = None,
    today: Optional[date] = None,
) -> MikrotikInvoice:
    today = today or date.today()
    amount, discount, tax, total = invoice_totals(account.monthly_fee, plan.discount)

    credit = money(account.balance)
    applied = min(credit, total)

    invoice = MikrotikInvoice(
        invoice_number=next_invoice_number(db),
        account_id=account.id,
        plan_id=plan.id,
        billing_period=billing_period or today.strftime("%Y-%m"),
        amount=amount,
        discount=discount,
        tax=tax,
        total=total,
        amount_paid=applied,
        status="issued",
        issue_date=today,
        due_date=today + timedelta(days=settings.invoice_due_days),
    )
    if applied >= total:
        invoice.status = "paid"
        invoice.paid_date = utcnow()
        invoice.payment_method = "credit"
    elif applied > ZERO:
        invoice.status = "partially_paid"

    account.balance = credit - applied
    account.outstanding_balance = money(account.outstanding_balance) + total - applied
    account.last_billing_date = today
    account.next_billing_date = today + timedelta(days=settings.billing_cycle_days)
    account.updated_at = utcnow()

    db.add(invoice)
    db.flush()
    logger.info(
        "Generated invoice %s for account %s: total=%s credit_applied=%s",
        invoice.invoice_number,
        account.account_number,
        total,
        applied,
    )
    return invoice


def open_invoices(db: Session, account_id: int) -> list[MikrotikInvoice]:
    return (
        db.query(MikrotikInvoice)
        .filter(
            MikrotikInvoice.account_id == account_id,
            MikrotikInvoice.status.in_(OPEN_INVOICE_STATUSES),
        )
        .order_by(MikrotikInvoice.issue_date, MikrotikInvoice.id)
        .all()
    )


def apply_payment(
    db: Session,
    account: MikrotikAccount,
    amount,
    invoice: Optional[MikrotikInvoice] = None,
    payment_method: Optional[str] = None,
    now: Optional[datetime] = None,
) -> list[MikrotikInvoice]:
    """
    Settle invoices with ``amount`` and update the account balances.

    With ``invoice`` only that invoice is settled; otherwise open invoices are
    settled oldest first. Outstanding balance drops by the full amount (never
    below zero) and whatever exceeds it becomes account credit.

    Returns the invoices that received money.
    """
    now = now or utcnow()
    amount = money(amount)
    remaining = amount
    targets = [invoice] if invoice is not None else open_invoices(db, account.id)

    settled: list[MikrotikInvoice] = []
    for target in targets:
        if remaining <= ZERO:
            break
        owed = money(target.total) - money(target.amount_paid)
        if owed <= ZERO:
            continue
        portion = min(owed, remaining)
        target.amount_paid = money(target.amount_paid) + portion
        remaining -= portion
        if target.amount_paid >= money(target.total):
            target.status = "paid"
            target.paid_date = now
        else:
            target.status = "partially_paid"
        target.payment_method = payment_method
        target.updated_at = now
        settled.append(target)

    outstanding = money(account.outstanding_balance)
    account.outstanding_balance = max(ZERO, outstanding - amount)
    account.balance = money(account.balance) + max(ZERO, amount - outstanding)
    account.total_paid = money(account.total_paid) + amount
    account.updated_at = now
    db.flush()
    return settled


def process_overdue_invoices(db: Session, today: Optional[date] = None) -> int:
    today = today or date.today()
    overdue = (
        db.query(MikrotikInvoice)
        .filter(
            MikrotikInvoice.status.in_(("issued", "partially_paid")),
            MikrotikInvoice.due_date < today,
        )
        .all()
    )
    now = utcnow()
    for invoice in overdue:
        invoice.status = "overdue"
        invoice.updated_at = now
    db.flush()
    if overdue:
        logger.info("Marked %d invoice(s) overdue", len(overdue))
    return len(overdue)

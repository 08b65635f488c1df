"""
Account expiration automation.

An account is expired once its next billing date is in the past; it should
be suspended when it is still active and has been expired for longer than
the grace period. Evaluation is a pure function of the account and ``today``;
processing applies suspensions one savepoint per account and records every
action in ``expiration_log``.
"""

from dataclasses import asdict, dataclass
from datetime import date
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from isp_crm.logging_config import get_logger
from isp_crm.models import ExpirationLog, MikrotikAccount, utcnow

logger = get_logger(__name__)

EXPIRATION_DETECTED = "EXPIRATION_DETECTED"
AUTO_SUSPENDED = "AUTO_SUSPENDED"
RENEWAL_DETECTED = "RENEWAL_DETECTED"
AUTO_RESUMED = "AUTO_RESUMED"

RENEWABLE_STATUSES = ("suspended", "closed", "paused")


@dataclass
class ExpirationCheck:
    account_id: int
    account_number: str
    customer_name: str
    status: str
    next_billing_date: Optional[date]
    is_expired: bool
    days_overdue: int
    should_be_suspended: bool
    currently_active: bool

    def to_dict(self) -> dict:
        data = asdict(self)
        data["next_billing_date"] = self.next_billing_date.isoformat() if self.next_billing_date else None
        return data


@dataclass
class ProcessResult:
    processed_count: int = 0
    suspended_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def evaluate_expiration(
    account: MikrotikAccount, grace_period_days: int, today: Optional[date] = None
) -> ExpirationCheck:
    today = today or date.today()
    next_billing = account.next_billing_date
    days_overdue = (today - next_billing).days if next_billing else 0
    is_expired = days_overdue > 0
    currently_active = account.status == "active"
    return ExpirationCheck(
        account_id=account.id,
        account_number=account.account_number,
        customer_name=account.customer_name,
        status=account.status,
        next_billing_date=next_billing,
        is_expired=is_expired,
        days_overdue=max(days_overdue, 0),
        should_be_suspended=is_expired and days_overdue > grace_period_days and currently_active,
        currently_active=currently_active,
    )


def check_accounts(
    db: Session, instance_id: str, grace_period_days: int, today: Optional[date] = None
) -> list[ExpirationCheck]:
    accounts = (
        db.query(MikrotikAccount)
        .filter(MikrotikAccount.instance_id == instance_id)
        .order_by(MikrotikAccount.id)
        .all()
    )
    return [evaluate_expiration(account, grace_period_days, today) for account in accounts]


def summarize(checks: list[ExpirationCheck]) -> dict:
    return {
        "total_accounts": len(checks),
        "expired_accounts": sum(1 for c in checks if c.is_expired),
        "active_expired": sum(1 for c in checks if c.is_expired and c.currently_active),
        "pending_suspension": sum(1 for c in checks if c.should_be_suspended),
    }


def log_action(
    db: Session,
    instance_id: str,
    account: MikrotikAccount,
    action: str,
    status: str,
    details: str,
) -> ExpirationLog:
    entry = ExpirationLog(
        instance_id=instance_id,
        account_id=account.id,
        account_number=account.account_number,
        customer_name=account.customer_name,
        action=action,
        status=status,
        details=details,
        next_billing_date=account.next_billing_date,
    )
    db.add(entry)
    return entry


def process_expirations(
    db: Session,
    instance_id: str,
    grace_period_days: int,
    auto_suspend: bool = True,
    today: Optional[date] = None,
) -> ProcessResult:
    """Suspend every active account past its grace period. Commits once at the end."""
    result = ProcessResult()
    checks = check_accounts(db, instance_id, grace_period_days, today)

    for check in checks:
        if not check.should_be_suspended:
            result.skipped_count += 1
            continue
        result.processed_count += 1
        account = db.get(MikrotikAccount, check.account_id)

        if not auto_suspend:
            log_action(
                db,
                instance_id,
                account,
                EXPIRATION_DETECTED,
                "success",
                f"Account expired {check.days_overdue} day(s) ago; auto-suspend disabled",
            )
            continue

        savepoint = db.begin_nested()
        try:
            account.status = "suspended"
            account.updated_at = utcnow()
            log_action(
                db,
                instance_id,
                account,
                AUTO_SUSPENDED,
                "success",
                f"Suspended after {check.days_overdue} day(s) overdue (grace {grace_period_days})",
            )
            savepoint.commit()
            result.suspended_count += 1
        except SQLAlchemyError as exc:
            savepoint.rollback()
            result.failed_count += 1
            logger.error("Failed to suspend account %s: %s", check.account_number, exc)
            log_action(db, instance_id, account, AUTO_SUSPENDED, "failed", str(exc))

    db.commit()
    logger.info(
        "Expiration run for %s: processed=%d suspended=%d failed=%d skipped=%d",
        instance_id,
        result.processed_count,
        result.suspended_count,
        result.failed_count,
        result.skipped_count,
    )
    return result


def renew_account(
    db: Session, account: MikrotikAccount, new_next_billing_date: date, instance_id: str
) -> bool:
    """Reactivate an account with a new billing date; return whether it was resumed."""
    log_action(
        db,
        instance_id,
        account,
        RENEWAL_DETECTED,
        "success",
        f"Renewal received; next billing date {new_next_billing_date.isoformat()}",
    )
    account.next_billing_date = new_next_billing_date
    account.updated_at = utcnow()
    resumed = account.status in RENEWABLE_STATUSES
    if resumed:
        account.status = "active"
        log_action(db, instance_id, account, AUTO_RESUMED, "success", "Account reactivated")
    db.commit()
    return resumed

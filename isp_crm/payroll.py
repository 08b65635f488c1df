"""
Payroll arithmetic and late-arrival deductions.

Deduction settings are a plain dict (stored as the ``late_deduction_settings``
app setting). Daily salary is the monthly salary divided by 30.
"""

import re
from collections import defaultdict
from decimal import Decimal
from typing import Iterable, Optional

from isp_crm.billing import money

DAYS_PER_MONTH = Decimal("30")
LATE_STATUSES = ("present", "late")
TIME_PATTERN = re.compile(r"(\d{1,2}):(\d{2})\s*(AM|PM)?", re.IGNORECASE)

DEFAULT_DEDUCTION_SETTINGS = {
    "enabled": False,
    "late_threshold_minutes": 15,
    "deduction_type": "fixed",
    "fixed_deduction_amount": 50,
    "percentage_deduction": 2,
    "scaled_deductions": [
        {"min_minutes": 15, "max_minutes": 30, "amount": 30},
        {"min_minutes": 31, "max_minutes": 60, "amount": 60},
        {"min_minutes": 61, "max_minutes": 120, "amount": 100},
        {"min_minutes": 121, "max_minutes": 999, "amount": 150},
    ],
    "apply_after_days": 1,
    "exclude_employee_ids": [],
    "official_check_in_time": "08:30",
}


def time_to_minutes(value: Optional[str]) -> Optional[int]:
    """Minutes since midnight for "HH:MM" or "HH:MM AM/PM"; None if unparseable."""
    if not value:
        return None
    match = TIME_PATTERN.search(value)
    if not match:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    meridiem = (match.group(3) or "").upper()
    if meridiem == "PM" and hours != 12:
        hours += 12
    if meridiem == "AM" and hours == 12:
        hours = 0
    return hours * 60 + minutes


def daily_salary(salary) -> Decimal:
    return Decimal(str(salary or 0)) / DAYS_PER_MONTH


def calculate_deduction(late_minutes: int, daily: Decimal, config: dict) -> Decimal:
    if not config.get("enabled") or late_minutes < config.get("late_threshold_minutes", 0):
        return Decimal("0")

    kind = config.get("deduction_type")
    if kind == "fixed":
        return money(config.get("fixed_deduction_amount") or 0)
    if kind == "percentage":
        return money(daily * Decimal(str(config.get("percentage_deduction") or 0)) / Decimal("100"))
    if kind == "scaled":
        tiers = config.get("scaled_deductions") or []
        if not tiers:
            return Decimal("0")
        for tier in tiers:
            if tier["min_minutes"] <= late_minutes <= tier["max_minutes"]:
                return money(tier["amount"])
        return money(tiers[-1]["amount"])
    return Decimal("0")


def calculate_monthly_deductions(employees: Iterable, attendance: Iterable, config: dict) -> dict:
    """
    Late deductions per employee id for one month of attendance records.

    Only employees whose count of late days reaches ``apply_after_days`` get
    an entry. Each entry carries the day-by-day breakdown.
    """
    if not config.get("enabled"):
        return {}

    official = time_to_minutes(config.get("official_check_in_time")) or 0
    threshold = config.get("late_threshold_minutes", 0)
    excluded = set(config.get("exclude_employee_ids") or [])
    salaries = {employee.id: employee.salary for employee in employees}

    by_employee = defaultdict(list)
    for record in attendance:
        by_employee[record.employee_id].append(record)

    results = {}
    for employee_id, records in by_employee.items():
        if employee_id in excluded or employee_id not in salaries:
            continue
        daily = daily_salary(salaries[employee_id])
        breakdown = []
        for record in sorted(records, key=lambda r: r.date):
            if record.status not in LATE_STATUSES:
                continue
            check_in = time_to_minutes(record.check_in_time)
            if check_in is None:
                continue
            late_minutes = max(0, check_in - official)
            if late_minutes < threshold:
                continue
            breakdown.append(
                {
                    "date": record.date.isoformat(),
                    "late_minutes": late_minutes,
                    "deduction": calculate_deduction(late_minutes, daily, config),
                }
            )

        if breakdown and len(breakdown) >= (config.get("apply_after_days") or 1):
            total_minutes = sum(item["late_minutes"] for item in breakdown)
            results[employee_id] = {
                "employee_id": employee_id,
                "late_days": len(breakdown),
                "total_late_minutes": total_minutes,
                "average_late_minutes": round(total_minutes / len(breakdown)),
                "deduction_amount": money(sum(item["deduction"] for item in breakdown)),
                "breakdown": breakdown,
            }
    return results


def net_salary(base_salary, allowances=0, bonus=0, deductions=0, tax=0) -> Decimal:
    return money(money(base_salary) + money(allowances) + money(bonus) - money(deductions) - money(tax))

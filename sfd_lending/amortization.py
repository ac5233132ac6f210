"""
Amortization Module

Turns (principal, annual rate, duration) into a monthly payment and a dated
repayment schedule using the declining-balance (French) method. Amounts are
rounded to the currency unit each period; the final period absorbs the
rounding drift so the principal column always sums to the loan amount.
"""

from decimal import Decimal
from datetime import date, datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Union
import calendar

from .currency import Currency, DEFAULT_CURRENCY, round_amount, to_decimal
from .exceptions import ValidationError


Number = Union[Decimal, int, str, float]

ZERO = Decimal('0')


@dataclass(frozen=True)
class AmortizationEntry:
    """Single entry in amortization schedule"""
    installment_number: int
    due_date: date
    principal_amount: Decimal
    interest_amount: Decimal
    total_amount: Decimal
    remaining_principal: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'installment_number': self.installment_number,
            'due_date': self.due_date.isoformat(),
            'principal_amount': str(self.principal_amount),
            'interest_amount': str(self.interest_amount),
            'total_amount': str(self.total_amount),
            'remaining_principal': str(self.remaining_principal),
        }


@dataclass(frozen=True)
class AmortizationResult:
    """Monthly payment, totals and the full schedule"""
    monthly_payment: Decimal
    total_repayment: Decimal
    total_interest: Decimal
    schedule: List[AmortizationEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """JSON shape returned by the calculate-loan-schedule function"""
        return {
            'monthlyPayment': str(self.monthly_payment),
            'totalRepayment': str(self.total_repayment),
            'totalInterest': str(self.total_interest),
            'schedule': [entry.to_dict() for entry in self.schedule],
        }


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of shorter months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def _validate(principal: Number, annual_rate_percent: Number, months: int):
    try:
        principal = to_decimal(principal)
        rate = to_decimal(annual_rate_percent)
    except ValueError as e:
        raise ValidationError(str(e))
    if not principal.is_finite() or principal <= ZERO:
        raise ValidationError("Principal must be positive", field="principal", value=principal)
    if not rate.is_finite() or rate < ZERO:
        raise ValidationError(
            "Interest rate cannot be negative", field="annual_rate_percent", value=rate
        )
    if isinstance(months, bool) or not isinstance(months, int) or months <= 0:
        raise ValidationError("Duration must be a positive number of months", field="months", value=months)
    return principal, rate


def monthly_rate(annual_rate_percent: Decimal) -> Decimal:
    """Annual percentage to periodic monthly rate"""
    return annual_rate_percent / Decimal('100') / Decimal('12')


def calculate_monthly_payment(
    principal: Number,
    annual_rate_percent: Number,
    months: int,
    currency: Currency = DEFAULT_CURRENCY
) -> Decimal:
    """
    Level monthly payment for an amortizing loan

    Standard formula: P * r(1+r)^n / ((1+r)^n - 1), or P / n when the rate
    is zero. Rounded to the currency unit.

    Raises:
        ValidationError: If principal or months is not positive, or rate is negative
    """
    principal, rate = _validate(principal, annual_rate_percent, months)
    r = monthly_rate(rate)
    if r == ZERO:
        return round_amount(principal / Decimal(months), currency)
    factor = (Decimal('1') + r) ** months
    return round_amount(principal * r * factor / (factor - Decimal('1')), currency)


def compute_schedule(
    principal: Number,
    annual_rate_percent: Number,
    months: int,
    start_date: date,
    currency: Currency = DEFAULT_CURRENCY
) -> AmortizationResult:
    """
    Generate the repayment schedule for a loan

    Args:
        principal: Loan amount
        annual_rate_percent: Annual interest rate in percent (12 for 12%)
        months: Number of monthly installments
        start_date: Installment i falls due i months after this date
        currency: Rounding unit (whole FCFA by default)

    Returns:
        AmortizationResult with the rounded monthly payment, totals and entries

    Raises:
        ValidationError: On non-positive principal/months or negative rate
    """
    principal, rate = _validate(principal, annual_rate_percent, months)
    if isinstance(start_date, datetime):
        start_date = start_date.date()
    if not isinstance(start_date, date):
        raise ValidationError("start_date must be a date", field="start_date", value=start_date)

    r = monthly_rate(rate)
    payment = calculate_monthly_payment(principal, rate, months, currency)
    principal = round_amount(principal, currency)

    schedule: List[AmortizationEntry] = []
    remaining = principal

    for number in range(1, months + 1):
        interest = round_amount(remaining * r, currency)
        principal_part = max(ZERO, payment - interest)

        # Final period (or a payment that already clears the balance) takes what is left
        if number == months or principal_part >= remaining:
            principal_part = remaining

        remaining = remaining - principal_part

        schedule.append(AmortizationEntry(
            installment_number=number,
            due_date=add_months(start_date, number),
            principal_amount=principal_part,
            interest_amount=interest,
            total_amount=principal_part + interest,
            remaining_principal=remaining,
        ))

        if remaining <= ZERO:
            break

    total_repayment = sum((entry.total_amount for entry in schedule), ZERO)

    return AmortizationResult(
        monthly_payment=payment,
        total_repayment=total_repayment,
        total_interest=total_repayment - principal,
        schedule=schedule,
    )

"""
Lending Records Module

Typed records for loans, schedule installments, subsidy grants, subsidy usage
and loan payments. Rows read back from storage are validated when parsed, so a
malformed row fails here instead of travelling through the calculations.
"""

from decimal import Decimal, InvalidOperation
from datetime import datetime, date, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Type, TypeVar
from enum import Enum

from .exceptions import ValidationError
from .storage import StorageRecord


E = TypeVar("E", bound=Enum)

ZERO = Decimal('0')


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"
    APPROVED = "approved"
    DISBURSED = "disbursed"
    ACTIVE = "active"
    LATE = "late"              # Display state: active with overdue installments
    COMPLETED = "completed"
    REJECTED = "rejected"
    DEFAULTED = "defaulted"


class InstallmentStatus(Enum):
    """Repayment schedule row states"""
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    PARTIALLY_PAID = "partially_paid"


class GrantStatus(Enum):
    """Subsidy grant states"""
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


class PaymentStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentMethod(Enum):
    """Channels through which a repayment reaches the SFD"""
    CASH = "cash"
    MOBILE_MONEY = "mobile_money"
    BANK_TRANSFER = "bank_transfer"
    SFD_ACCOUNT = "sfd_account"


# Parsing helpers: each raises ValidationError naming the offending field

def _require(data: Dict[str, Any], key: str, entity: str) -> Any:
    if key not in data or data[key] is None:
        raise ValidationError(f"{entity} row is missing '{key}'", entity=entity, field=key)
    return data[key]


def _decimal(value: Any, key: str, entity: str) -> Decimal:
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(f"{entity}.{key} must be a decimal string or integer", entity=entity, field=key)
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"{entity}.{key} is not a number: {value!r}", entity=entity, field=key)
    if not result.is_finite():
        raise ValidationError(f"{entity}.{key} must be finite", entity=entity, field=key)
    return result


def _int(value: Any, key: str, entity: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{entity}.{key} must be an integer", entity=entity, field=key)
    return value


def _datetime(value: Any, key: str, entity: str) -> datetime:
    if isinstance(value, datetime):
        return value
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{entity}.{key} is not an ISO datetime: {value!r}", entity=entity, field=key)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _date(value: Any, key: str, entity: str) -> date:
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{entity}.{key} is not an ISO date: {value!r}", entity=entity, field=key)


def _enum(enum_type: Type[E], value: Any, key: str, entity: str) -> E:
    try:
        return enum_type(value)
    except ValueError:
        raise ValidationError(
            f"{entity}.{key} has unknown value {value!r}", entity=entity, field=key
        )


def _optional(data: Dict[str, Any], key: str, parser, entity: str):
    value = data.get(key)
    if value is None:
        return None
    return parser(value, key, entity)


def _base_fields(data: Dict[str, Any], entity: str) -> Dict[str, Any]:
    return {
        'id': str(_require(data, 'id', entity)),
        'created_at': _datetime(_require(data, 'created_at', entity), 'created_at', entity),
        'updated_at': _datetime(_require(data, 'updated_at', entity), 'updated_at', entity),
        'version': _int(data.get('version', 0), 'version', entity),
    }


@dataclass
class Loan(StorageRecord):
    """Loan granted by an SFD to one client"""
    client_id: str
    sfd_id: str
    amount: Decimal                     # Principal in FCFA
    duration_months: int
    interest_rate: Decimal              # Annual percentage, e.g. 12 for 12%
    purpose: str = ""
    status: LoanStatus = LoanStatus.PENDING
    monthly_payment: Optional[Decimal] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejection_notes: Optional[str] = None
    disbursed_at: Optional[datetime] = None
    disbursed_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    next_payment_date: Optional[date] = None
    last_payment_date: Optional[date] = None
    subsidy_amount: Decimal = ZERO
    subsidy_rate: Decimal = ZERO
    subsidy_id: Optional[str] = None
    version: int = 0

    def __post_init__(self):
        if self.amount <= ZERO:
            raise ValidationError("Loan amount must be positive", field="amount", value=self.amount)
        if self.duration_months <= 0:
            raise ValidationError(
                "Loan duration must be positive", field="duration_months", value=self.duration_months
            )
        if self.interest_rate < ZERO:
            raise ValidationError(
                "Interest rate cannot be negative", field="interest_rate", value=self.interest_rate
            )
        if self.subsidy_amount < ZERO:
            raise ValidationError(
                "Subsidy amount cannot be negative", field="subsidy_amount", value=self.subsidy_amount
            )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        entity = "loan"
        return cls(
            **_base_fields(data, entity),
            client_id=str(_require(data, 'client_id', entity)),
            sfd_id=str(_require(data, 'sfd_id', entity)),
            amount=_decimal(_require(data, 'amount', entity), 'amount', entity),
            duration_months=_int(_require(data, 'duration_months', entity), 'duration_months', entity),
            interest_rate=_decimal(_require(data, 'interest_rate', entity), 'interest_rate', entity),
            purpose=data.get('purpose') or "",
            status=_enum(LoanStatus, _require(data, 'status', entity), 'status', entity),
            monthly_payment=_optional(data, 'monthly_payment', _decimal, entity),
            approved_at=_optional(data, 'approved_at', _datetime, entity),
            approved_by=data.get('approved_by'),
            rejected_at=_optional(data, 'rejected_at', _datetime, entity),
            rejected_by=data.get('rejected_by'),
            rejection_notes=data.get('rejection_notes'),
            disbursed_at=_optional(data, 'disbursed_at', _datetime, entity),
            disbursed_by=data.get('disbursed_by'),
            completed_at=_optional(data, 'completed_at', _datetime, entity),
            next_payment_date=_optional(data, 'next_payment_date', _date, entity),
            last_payment_date=_optional(data, 'last_payment_date', _date, entity),
            subsidy_amount=_decimal(data.get('subsidy_amount', '0'), 'subsidy_amount', entity),
            subsidy_rate=_decimal(data.get('subsidy_rate', '0'), 'subsidy_rate', entity),
            subsidy_id=data.get('subsidy_id'),
        )


@dataclass
class ScheduleInstallment(StorageRecord):
    """One row of a loan's repayment schedule"""
    loan_id: str
    installment_number: int
    due_date: date
    principal_amount: Decimal
    interest_amount: Decimal
    total_amount: Decimal               # principal + interest for the period
    remaining_principal: Decimal        # Balance once this installment is paid
    status: InstallmentStatus = InstallmentStatus.PENDING
    paid_amount: Decimal = ZERO
    paid_at: Optional[datetime] = None
    late_fee: Decimal = ZERO
    days_overdue: int = 0
    version: int = 0

    @property
    def amount_due(self) -> Decimal:
        """What still has to be paid to settle this installment, late fee included"""
        if self.status == InstallmentStatus.PAID:
            return ZERO
        return max(ZERO, self.total_amount - self.paid_amount + self.late_fee)

    @property
    def is_outstanding(self) -> bool:
        return self.status != InstallmentStatus.PAID

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScheduleInstallment':
        entity = "schedule_installment"
        number = _int(_require(data, 'installment_number', entity), 'installment_number', entity)
        if number < 1:
            raise ValidationError(
                "installment_number must start at 1", entity=entity, field='installment_number'
            )
        return cls(
            **_base_fields(data, entity),
            loan_id=str(_require(data, 'loan_id', entity)),
            installment_number=number,
            due_date=_date(_require(data, 'due_date', entity), 'due_date', entity),
            principal_amount=_decimal(_require(data, 'principal_amount', entity), 'principal_amount', entity),
            interest_amount=_decimal(_require(data, 'interest_amount', entity), 'interest_amount', entity),
            total_amount=_decimal(_require(data, 'total_amount', entity), 'total_amount', entity),
            remaining_principal=_decimal(
                _require(data, 'remaining_principal', entity), 'remaining_principal', entity
            ),
            status=_enum(InstallmentStatus, _require(data, 'status', entity), 'status', entity),
            paid_amount=_decimal(data.get('paid_amount', '0'), 'paid_amount', entity),
            paid_at=_optional(data, 'paid_at', _datetime, entity),
            late_fee=_decimal(data.get('late_fee', '0'), 'late_fee', entity),
            days_overdue=_int(data.get('days_overdue', 0), 'days_overdue', entity),
        )


@dataclass
class SubsidyGrant(StorageRecord):
    """Subsidy allocated by MEREF to one SFD (``sfd_subsidies``)"""
    sfd_id: str
    amount: Decimal
    used_amount: Decimal = ZERO
    status: GrantStatus = GrantStatus.ACTIVE
    allocated_by: Optional[str] = None
    allocated_at: Optional[datetime] = None
    end_date: Optional[date] = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None
    low_balance_notified: bool = False
    version: int = 0

    def __post_init__(self):
        if self.amount <= ZERO:
            raise ValidationError("Subsidy amount must be positive", field="amount", value=self.amount)
        if self.used_amount < ZERO or self.used_amount > self.amount:
            raise ValidationError(
                "Subsidy used_amount must be between 0 and amount",
                field="used_amount", value=self.used_amount, amount=self.amount
            )

    @property
    def remaining_amount(self) -> Decimal:
        return self.amount - self.used_amount

    def is_expired(self, today: date) -> bool:
        return self.end_date is not None and self.end_date < today

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        # Written for readers; always recomputed on load
        result['remaining_amount'] = str(self.remaining_amount)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SubsidyGrant':
        entity = "subsidy_grant"
        return cls(
            **_base_fields(data, entity),
            sfd_id=str(_require(data, 'sfd_id', entity)),
            amount=_decimal(_require(data, 'amount', entity), 'amount', entity),
            used_amount=_decimal(data.get('used_amount', '0'), 'used_amount', entity),
            status=_enum(GrantStatus, _require(data, 'status', entity), 'status', entity),
            allocated_by=data.get('allocated_by'),
            allocated_at=_optional(data, 'allocated_at', _datetime, entity),
            end_date=_optional(data, 'end_date', _date, entity),
            revoked_at=_optional(data, 'revoked_at', _datetime, entity),
            revoked_by=data.get('revoked_by'),
            low_balance_notified=bool(data.get('low_balance_notified', False)),
        )


@dataclass
class SubsidyUsage(StorageRecord):
    """Append-only ledger entry: part of a grant consumed by one loan"""
    subsidy_id: str
    loan_id: str
    amount: Decimal
    used_at: datetime
    notes: Optional[str] = None
    version: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SubsidyUsage':
        entity = "subsidy_usage"
        return cls(
            **_base_fields(data, entity),
            subsidy_id=str(_require(data, 'subsidy_id', entity)),
            loan_id=str(_require(data, 'loan_id', entity)),
            amount=_decimal(_require(data, 'amount', entity), 'amount', entity),
            used_at=_datetime(_require(data, 'used_at', entity), 'used_at', entity),
            notes=data.get('notes'),
        )


@dataclass
class LoanPayment(StorageRecord):
    """Append-only record of one repayment event"""
    loan_id: str
    amount: Decimal
    payment_method: PaymentMethod
    transaction_id: str                 # External reference, also the idempotency key
    payment_date: datetime
    status: PaymentStatus = PaymentStatus.COMPLETED
    allocations: Dict[int, Decimal] = field(default_factory=dict)  # installment_number -> amount
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['allocations'] = {
            str(number): str(amount) for number, amount in self.allocations.items()
        }
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanPayment':
        entity = "loan_payment"
        raw_allocations = data.get('allocations') or {}
        if not isinstance(raw_allocations, dict):
            raise ValidationError("loan_payment.allocations must be a mapping", entity=entity, field='allocations')
        allocations = {}
        for number, amount in raw_allocations.items():
            try:
                key = int(number)
            except (TypeError, ValueError):
                raise ValidationError(
                    f"loan_payment.allocations key {number!r} is not an installment number",
                    entity=entity, field='allocations'
                )
            allocations[key] = _decimal(amount, 'allocations', entity)
        return cls(
            **_base_fields(data, entity),
            loan_id=str(_require(data, 'loan_id', entity)),
            amount=_decimal(_require(data, 'amount', entity), 'amount', entity),
            payment_method=_enum(
                PaymentMethod, _require(data, 'payment_method', entity), 'payment_method', entity
            ),
            transaction_id=str(_require(data, 'transaction_id', entity)),
            payment_date=_datetime(_require(data, 'payment_date', entity), 'payment_date', entity),
            status=_enum(PaymentStatus, data.get('status', 'completed'), 'status', entity),
            allocations=allocations,
        )

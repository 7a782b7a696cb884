"""
Ledger Entry Model

Immutable credit/debit entries carrying the running balance of the account,
amount normalisation, the rejection taxonomy, and a full-history integrity
check. All monetary values use Decimal; float is only accepted as input.
"""

from decimal import Decimal, Inexact, InvalidOperation, Rounded, ROUND_HALF_UP, localcontext
from datetime import datetime
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional
from enum import Enum


ZERO = Decimal('0')


class TransactionKind(Enum):
    """Direction of a ledger entry"""
    CREDIT = "Credit"  # Increases the balance
    DEBIT = "Debit"    # Decreases the balance

    @classmethod
    def parse(cls, value: Any) -> 'TransactionKind':
        """Accept a kind, its value or its name in any case"""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            normalized = value.strip().lower()
            for kind in cls:
                if normalized in (kind.value.lower(), kind.name.lower()):
                    return kind
        raise InvalidKindError(f"Unknown transaction kind: {value!r}")


class RejectionReason(Enum):
    """Why a submission was not committed"""
    INVALID_AMOUNT = "invalid_amount"
    INVALID_KIND = "invalid_kind"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    STORAGE_FAILURE = "storage_failure"


class CommitOutcome(Enum):
    """Whether a failed submission might still have reached the store"""
    FAILED = "failed"    # Definitely not committed, safe to retry
    UNKNOWN = "unknown"  # Storage timed out, the entry may or may not exist


class LedgerRejection(ValueError):
    """Base class for submissions the ledger refused to commit"""
    reason: RejectionReason

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, str]:
        return {"reason": self.reason.value, "message": self.message}


class InvalidAmountError(LedgerRejection):
    reason = RejectionReason.INVALID_AMOUNT


class InvalidKindError(LedgerRejection):
    reason = RejectionReason.INVALID_KIND


class InsufficientBalanceError(LedgerRejection):
    reason = RejectionReason.INSUFFICIENT_BALANCE

    def __init__(self, amount: Decimal, balance: Decimal):
        super().__init__(f"Insufficient balance: requested {amount}, available {balance}")
        self.amount = amount
        self.balance = balance


class StorageFailureError(LedgerRejection):
    reason = RejectionReason.STORAGE_FAILURE

    def __init__(self, message: str, outcome: CommitOutcome = CommitOutcome.FAILED):
        super().__init__(message)
        self.outcome = outcome

    def to_dict(self) -> Dict[str, str]:
        result = super().to_dict()
        result["outcome"] = self.outcome.value
        return result


class LedgerIntegrityError(Exception):
    """Stored history violates the balance recurrence or sequence order"""

    def __init__(self, message: str, sequence: Optional[int] = None):
        super().__init__(message)
        self.sequence = sequence


def normalize_amount(value: Any, precision: int = 2) -> Decimal:
    """
    Convert a caller-supplied amount to a quantised Decimal

    Args:
        value: Decimal, int, float or numeric string
        precision: Decimal places to keep (ROUND_HALF_UP)

    Returns:
        Non-negative finite Decimal

    Raises:
        InvalidAmountError: For non-numeric, non-finite or negative values
    """
    if value is None or isinstance(value, bool):
        raise InvalidAmountError(f"Invalid amount: {value!r}")

    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float, str)):
        try:
            # str() keeps floats at their shortest repr instead of binary noise
            amount = Decimal(str(value).strip())
        except InvalidOperation:
            raise InvalidAmountError(f"Invalid amount: {value!r}")
    else:
        raise InvalidAmountError(f"Invalid amount: {value!r}")

    if not amount.is_finite():
        raise InvalidAmountError(f"Amount must be finite, got {value!r}")
    if amount < 0:
        raise InvalidAmountError(f"Amount must not be negative, got {value!r}")

    try:
        quantized = amount.quantize(Decimal('0.1') ** precision, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise InvalidAmountError(f"Amount out of range: {value!r}")
    # Avoid "-0.00" for tiny negative inputs that round to zero
    return quantized + ZERO


@dataclass(frozen=True)
class LedgerEntry:
    """
    One committed credit or debit

    The balance is the account balance immediately after this entry was
    applied. Entries are never modified once committed.
    """
    sequence: int
    kind: TransactionKind
    amount: Decimal
    balance: Decimal
    timestamp: datetime

    @property
    def signed_amount(self) -> Decimal:
        """Effect of this entry on the balance"""
        if self.kind == TransactionKind.CREDIT:
            return self.amount
        return -self.amount

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage and serialization"""
        return {
            'sequence': self.sequence,
            'kind': self.kind.value,
            'amount': str(self.amount),
            'balance': str(self.balance),
            'timestamp': self.timestamp.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerEntry':
        """Create instance from dictionary"""
        timestamp = data['timestamp']
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)

        return cls(
            sequence=int(data['sequence']),
            kind=TransactionKind(data['kind']),
            amount=Decimal(str(data['amount'])),
            balance=Decimal(str(data['balance'])),
            timestamp=timestamp
        )


def next_balance(previous: Decimal, kind: TransactionKind, amount: Decimal) -> Decimal:
    """
    Apply one entry to the previous balance

    The result is exact or not produced at all: a sum that needs more
    significant digits than the decimal context carries is rejected rather
    than rounded.

    Raises:
        InvalidAmountError: If the new balance cannot be represented exactly
    """
    with localcontext() as ctx:
        ctx.traps[Inexact] = True
        ctx.traps[Rounded] = True
        try:
            if kind == TransactionKind.CREDIT:
                return previous + amount
            return previous - amount
        except (Inexact, Rounded):
            raise InvalidAmountError(
                f"Amount {amount} would take the balance beyond {ctx.prec} significant digits"
            )


def verify_entries(entries: Iterable[LedgerEntry]) -> Decimal:
    """
    Replay a full history from a zero balance

    Checks that sequences start at 1 without gaps, that every stored balance
    follows from the previous one, and that the balance never goes negative.

    Returns:
        The final replayed balance

    Raises:
        LedgerIntegrityError: On the first entry that breaks a rule
    """
    balance = ZERO
    expected_sequence = 1

    for entry in entries:
        if entry.sequence != expected_sequence:
            raise LedgerIntegrityError(
                f"Expected sequence {expected_sequence}, found {entry.sequence}",
                sequence=entry.sequence
            )

        try:
            balance = next_balance(balance, entry.kind, entry.amount)
        except InvalidAmountError as e:
            raise LedgerIntegrityError(
                f"Entry {entry.sequence} cannot be replayed exactly: {e}",
                sequence=entry.sequence
            )
        if entry.balance != balance:
            raise LedgerIntegrityError(
                f"Entry {entry.sequence} records balance {entry.balance}, replay gives {balance}",
                sequence=entry.sequence
            )
        if balance < 0:
            raise LedgerIntegrityError(
                f"Entry {entry.sequence} leaves a negative balance {balance}",
                sequence=entry.sequence
            )

        expected_sequence += 1

    return balance

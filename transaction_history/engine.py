"""
Balance Engine

The single writer of the ledger. Every submission is validated against the
balance at the instant of commit and appended inside one critical section, so
concurrent submissions always apply in some serial order.
"""

from decimal import Decimal
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional
import logging
import threading

from .ledger import (
    LedgerEntry, TransactionKind, CommitOutcome,
    InvalidAmountError, InvalidKindError, InsufficientBalanceError, StorageFailureError,
    LedgerIntegrityError,
    normalize_amount, next_balance, verify_entries, ZERO
)
from .storage import LedgerStore, StoreError, StoreTimeoutError, SequenceConflictError
from .logging_config import get_logger, log_action


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BalanceEngine:
    """
    Validates, balances and commits ledger entries

    The store is owned by the engine; nothing else should append to it.
    """

    def __init__(
        self,
        store: LedgerStore,
        precision: int = 2,
        logger: Optional[logging.Logger] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.precision = precision
        self.logger = logger or get_logger("txhistory.engine")
        self._clock = clock or _utcnow
        self._write_lock = threading.RLock()
        self._needs_resync = False

    def submit(self, kind: Any, amount: Any) -> LedgerEntry:
        """
        Commit a credit or debit

        Args:
            kind: TransactionKind, or "Credit"/"Debit" in any case
            amount: Non-negative finite amount (Decimal, int, float or string)

        Returns:
            The committed LedgerEntry

        Raises:
            InvalidKindError: Unknown kind
            InvalidAmountError: Negative, non-finite or non-numeric amount
            InsufficientBalanceError: Debit larger than the balance at commit time
            StorageFailureError: The store failed; see its outcome attribute
        """
        try:
            kind = TransactionKind.parse(kind)
            amount = normalize_amount(amount, self.precision)
        except (InvalidKindError, InvalidAmountError) as e:
            log_action(
                self.logger, "warning", f"Submission rejected: {e}",
                action="submit_rejected", resource="ledger",
                extra={"reason": e.reason.value}
            )
            raise

        with self._write_lock:
            if self._needs_resync:
                self._resync()

            try:
                head = self.store.last_entry()
            except StoreError as e:
                raise StorageFailureError(f"Could not read ledger head: {e}") from e
            previous_balance = head.balance if head else ZERO

            if kind == TransactionKind.DEBIT and amount > previous_balance:
                error = InsufficientBalanceError(amount, previous_balance)
                log_action(
                    self.logger, "warning", f"Debit rejected: {error}",
                    action="submit_rejected", resource="ledger",
                    extra={"kind": kind.value, "amount": str(amount),
                           "balance": str(previous_balance), "reason": error.reason.value}
                )
                raise error

            try:
                balance = next_balance(previous_balance, kind, amount)
            except InvalidAmountError as e:
                log_action(
                    self.logger, "warning", f"Submission rejected: {e}",
                    action="submit_rejected", resource="ledger",
                    extra={"kind": kind.value, "amount": str(amount),
                           "balance": str(previous_balance), "reason": e.reason.value}
                )
                raise

            entry = LedgerEntry(
                sequence=head.sequence + 1 if head else 1,
                kind=kind,
                amount=amount,
                balance=balance,
                timestamp=self._clock()
            )

            try:
                committed = self.store.append(entry)
            except StoreTimeoutError as e:
                self._needs_resync = True
                raise self._storage_failure(entry, e, CommitOutcome.UNKNOWN) from e
            except SequenceConflictError as e:
                # Someone else wrote to the medium; the cached head is stale
                self._needs_resync = True
                raise self._storage_failure(entry, e, CommitOutcome.FAILED) from e
            except StoreError as e:
                raise self._storage_failure(entry, e, CommitOutcome.FAILED) from e

        log_action(
            self.logger, "info", f"{kind.value} committed: {amount}",
            action="submit", resource=f"entry:{committed.sequence}",
            extra={"sequence": committed.sequence, "kind": kind.value,
                   "amount": str(amount), "balance": str(committed.balance)}
        )
        return committed

    def credit(self, amount: Any) -> LedgerEntry:
        """Commit a credit"""
        return self.submit(TransactionKind.CREDIT, amount)

    def debit(self, amount: Any) -> LedgerEntry:
        """Commit a debit"""
        return self.submit(TransactionKind.DEBIT, amount)

    def history(self) -> List[LedgerEntry]:
        """All committed entries, most recent first"""
        try:
            entries = self.store.read_all()
        except StoreError as e:
            raise StorageFailureError(f"Could not read history: {e}") from e
        entries.reverse()
        return entries

    def balance(self) -> Decimal:
        """Current balance, zero for an empty ledger"""
        try:
            return self.store.current_balance()
        except StoreError as e:
            raise StorageFailureError(f"Could not read balance: {e}") from e

    def verify(self) -> int:
        """
        Replay the stored history and check every balance

        Returns:
            Number of entries verified

        Raises:
            LedgerIntegrityError: If the stored history is inconsistent
            StorageFailureError: If the store cannot be read
        """
        # Hold the write lock so no commit lands between the two reads
        with self._write_lock:
            try:
                entries = self.store.read_all()
                head = self.store.last_entry()
            except StoreError as e:
                raise StorageFailureError(f"Could not read history: {e}") from e

        replayed = verify_entries(entries)
        cached = head.balance if head else ZERO
        cached_sequence = head.sequence if head else 0
        if replayed != cached or cached_sequence != len(entries):
            self.logger.error(
                f"Cached head (sequence {cached_sequence}, balance {cached}) differs from "
                f"replayed history ({len(entries)} entries, balance {replayed})"
            )
            raise LedgerIntegrityError(
                f"Cached balance {cached} differs from replayed balance {replayed}",
                sequence=cached_sequence
            )
        log_action(
            self.logger, "info", f"Ledger verified: {len(entries)} entries",
            action="verify", resource="ledger",
            extra={"entries": len(entries), "balance": str(replayed)}
        )
        return len(entries)

    def _resync(self) -> None:
        """Reload the store head after an append with an uncertain outcome"""
        try:
            head = self.store.refresh()
        except StoreError as e:
            raise StorageFailureError(f"Could not resynchronise with store: {e}") from e
        self._needs_resync = False
        log_action(
            self.logger, "info", "Resynchronised ledger head from store",
            action="resync", resource="ledger",
            extra={"sequence": head.sequence if head else 0}
        )

    def _storage_failure(
        self,
        entry: LedgerEntry,
        error: StoreError,
        outcome: CommitOutcome
    ) -> StorageFailureError:
        log_action(
            self.logger, "error", f"{entry.kind.value} storage failure ({outcome.value}): {error}",
            action="submit_failed", resource=f"entry:{entry.sequence}",
            extra={"sequence": entry.sequence, "kind": entry.kind.value,
                   "amount": str(entry.amount), "outcome": outcome.value},
            exc_info=True
        )
        return StorageFailureError(str(error), outcome=outcome)

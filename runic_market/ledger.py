from __future__ import annotations

import hashlib
import threading
from collections.abc import Iterable, Iterator
from datetime import datetime
from pathlib import Path
from typing import Protocol, runtime_checkable

from runic_market.jsonutil import stable_json_dumps
from runic_market.schemas import PaymentRef, PaymentStatus, new_id, utcnow


@runtime_checkable
class Ledger(Protocol):
    """Settlement collaborator: records a payment owed for a completed task."""

    def create_pending_payment(
        self, task_id: str, agent_id: str, amount: int, token_symbol: str
    ) -> PaymentRef: ...


def _sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _compute_payment_hash(
    *,
    payment_id: str,
    prev_hash: str | None,
    created_at: datetime,
    task_id: str,
    agent_id: str,
    amount: int,
    token_symbol: str,
    status: PaymentStatus,
) -> str:
    to_hash = {
        "payment_id": payment_id,
        "prev_hash": prev_hash,
        "created_at": created_at.isoformat(),
        "task_id": task_id,
        "agent_id": agent_id,
        "amount": amount,
        "token_symbol": token_symbol,
        "status": status.value,
    }
    return _sha256_hex(stable_json_dumps(to_hash))


def _build_payment(
    *,
    task_id: str,
    agent_id: str,
    amount: int,
    token_symbol: str,
    prev_hash: str | None,
    created_at: datetime | None = None,
    payment_id: str | None = None,
) -> PaymentRef:
    """Construct a hash-chained PaymentRef (shared by both ledger backends)."""
    created_at = created_at or utcnow()
    payment_id = payment_id or new_id()
    status = PaymentStatus.PENDING
    payment_hash = _compute_payment_hash(
        payment_id=payment_id,
        prev_hash=prev_hash,
        created_at=created_at,
        task_id=task_id,
        agent_id=agent_id,
        amount=int(amount),
        token_symbol=token_symbol,
        status=status,
    )
    return PaymentRef(
        id=payment_id,
        task_id=task_id,
        agent_id=agent_id,
        amount=int(amount),
        token_symbol=token_symbol,
        status=status,
        created_at=created_at,
        prev_hash=prev_hash,
        hash=payment_hash,
    )


def _verify_payment_chain(payments: Iterable[PaymentRef]) -> None:
    """Verify hash-chain integrity across a sequence of payments."""
    prev_hash: str | None = None
    for p in payments:
        expected = _compute_payment_hash(
            payment_id=p.id,
            prev_hash=prev_hash,
            created_at=p.created_at,
            task_id=p.task_id,
            agent_id=p.agent_id,
            amount=p.amount,
            token_symbol=p.token_symbol,
            status=p.status,
        )
        if p.prev_hash != prev_hash:
            raise ValueError("ledger prev_hash mismatch")
        if p.hash != expected:
            raise ValueError("ledger hash mismatch")
        prev_hash = p.hash


class HashChainedPaymentLedger:
    """Append-only JSONL payment ledger; each line chains to the previous hash."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._tail_hash: str | None = None

        if self._path.exists():
            self._tail_hash = self._read_last_hash()

    @property
    def path(self) -> Path:
        return self._path

    def create_pending_payment(
        self, task_id: str, agent_id: str, amount: int, token_symbol: str
    ) -> PaymentRef:
        with self._lock:
            payment = _build_payment(
                task_id=task_id,
                agent_id=agent_id,
                amount=amount,
                token_symbol=token_symbol,
                prev_hash=self._tail_hash,
            )
            with self._path.open("a", encoding="utf-8") as f:
                f.write(stable_json_dumps(payment.model_dump(mode="json")))
                f.write("\n")
            self._tail_hash = payment.hash
            return payment

    def iter_payments(self) -> Iterator[PaymentRef]:
        if not self._path.exists():
            return iter(())
        return self._iter_lines()

    def _iter_lines(self) -> Iterator[PaymentRef]:
        with self._path.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                yield PaymentRef.model_validate_json(line)

    def verify_chain(self) -> None:
        _verify_payment_chain(self.iter_payments())

    def __len__(self) -> int:
        return sum(1 for _ in self.iter_payments())

    def _read_last_hash(self) -> str | None:
        try:
            with self._path.open("rb") as f:
                f.seek(0, 2)
                size = f.tell()
                read_size = min(size, 128 * 1024)
                f.seek(size - read_size)
                chunk = f.read(read_size).decode("utf-8", errors="ignore")
        except OSError:
            chunk = ""

        lines = [ln.strip() for ln in chunk.splitlines() if ln.strip()]
        if not lines:
            return None

        # If we didn't start at the beginning, the first line may be partial. Prefer the last line.
        try:
            return PaymentRef.model_validate_json(lines[-1]).hash
        except ValueError:
            return None


class InMemoryPaymentLedger:
    """Drop-in replacement for HashChainedPaymentLedger backed by a list."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._payments: list[PaymentRef] = []
        self._tail_hash: str | None = None

    def create_pending_payment(
        self, task_id: str, agent_id: str, amount: int, token_symbol: str
    ) -> PaymentRef:
        with self._lock:
            payment = _build_payment(
                task_id=task_id,
                agent_id=agent_id,
                amount=amount,
                token_symbol=token_symbol,
                prev_hash=self._tail_hash,
            )
            self._payments.append(payment)
            self._tail_hash = payment.hash
            return payment.model_copy(deep=True)

    def iter_payments(self) -> Iterator[PaymentRef]:
        with self._lock:
            snapshot = list(self._payments)
        for p in snapshot:
            yield p.model_copy(deep=True)

    def payments_for_task(self, task_id: str) -> list[PaymentRef]:
        return [p for p in self.iter_payments() if p.task_id == task_id]

    def verify_chain(self) -> None:
        with self._lock:
            snapshot = list(self._payments)
        _verify_payment_chain(snapshot)

    def __len__(self) -> int:
        with self._lock:
            return len(self._payments)

"""
Execution ledger.

Delegations keyed by owner (upsert), append-only execution records keyed by
(wallet, cycle_date), cycle summaries, fee reconciliation items and protocol
stats. ``ConvexLedger`` is the production store; ``InMemoryLedger`` backs
tests and local simulation.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

import structlog

from ....config import settings
from ....db.convex_client import ConvexClient, get_convex_client
from ...delegation.models import Delegation, DelegationStatus
from ...recovery import LEDGER_RETRY_POLICY, ClassifiedError, RetryPolicy, with_retry
from .models import ExecutionRecord, FeeReconciliationItem

_slog = structlog.stdlib.get_logger("dca_engine.ledger")

T = TypeVar("T")


class LedgerError(Exception):
    """A ledger operation failed after its retries."""

    def __init__(self, operation: str, error: ClassifiedError):
        super().__init__(f"Ledger {operation} failed: {error.message}")
        self.operation = operation
        self.error = error


class Ledger(ABC):
    """Storage interface used by the orchestrator and the API."""

    # Delegations -----------------------------------------------------------

    @abstractmethod
    async def get_active_delegations(self, now: Optional[int] = None) -> List[Delegation]:
        """Active delegations; with ``now``, expired ones are left out."""

    @abstractmethod
    async def get_delegation(self, owner: str) -> Optional[Delegation]:
        ...

    @abstractmethod
    async def upsert_delegation(self, delegation: Delegation) -> None:
        ...

    @abstractmethod
    async def revoke_delegation(self, owner: str) -> bool:
        """Mark the owner's delegation revoked. Returns False if none exists."""

    @abstractmethod
    async def increment_delegation_calls(self, smart_account: str, count: int) -> None:
        ...

    # Executions ------------------------------------------------------------

    @abstractmethod
    async def append_execution(self, record: ExecutionRecord) -> bool:
        """Store a record unless one exists for its (wallet, cycle_date). Returns True if stored."""

    @abstractmethod
    async def get_execution(self, wallet: str, cycle_date: str) -> Optional[ExecutionRecord]:
        ...

    @abstractmethod
    async def write_cycle_summary(self, summary: Dict[str, Any]) -> None:
        ...

    # Fees ------------------------------------------------------------------

    @abstractmethod
    async def add_fee_reconciliation(self, item: FeeReconciliationItem) -> FeeReconciliationItem:
        ...

    @abstractmethod
    async def list_pending_fee_reconciliations(self, limit: int) -> List[FeeReconciliationItem]:
        ...

    @abstractmethod
    async def update_fee_reconciliation(self, item: FeeReconciliationItem) -> None:
        ...

    @abstractmethod
    async def count_pending_fee_reconciliations(self) -> int:
        ...

    @abstractmethod
    async def record_protocol_stats(self, volume: Dict[str, int], fees: Dict[str, int]) -> None:
        """Add per-token swapped volume and collected fees to the running totals."""


class InMemoryLedger(Ledger):
    """Process-local ledger with the same idempotency guarantees as the real store."""

    def __init__(self, delegations: Optional[List[Delegation]] = None):
        self.delegations: Dict[str, Delegation] = {}
        self.executions: Dict[Tuple[str, str], ExecutionRecord] = {}
        self.cycle_summaries: List[Dict[str, Any]] = []
        self.fee_items: Dict[str, FeeReconciliationItem] = {}
        self.protocol_volume: Dict[str, int] = {}
        self.protocol_fees: Dict[str, int] = {}
        for delegation in delegations or []:
            self.delegations[delegation.owner.lower()] = delegation

    async def get_active_delegations(self, now: Optional[int] = None) -> List[Delegation]:
        return [
            d for d in self.delegations.values()
            if d.status == DelegationStatus.ACTIVE and (now is None or not d.is_expired(now))
        ]

    async def get_delegation(self, owner: str) -> Optional[Delegation]:
        return self.delegations.get(owner.lower())

    async def upsert_delegation(self, delegation: Delegation) -> None:
        self.delegations[delegation.owner.lower()] = delegation

    async def revoke_delegation(self, owner: str) -> bool:
        existing = self.delegations.get(owner.lower())
        if existing is None:
            return False
        self.delegations[owner.lower()] = existing.revoked()
        return True

    async def increment_delegation_calls(self, smart_account: str, count: int) -> None:
        for owner, delegation in self.delegations.items():
            if delegation.smart_account.lower() == smart_account.lower():
                self.delegations[owner] = replace(delegation, calls_used=delegation.calls_used + count)

    async def append_execution(self, record: ExecutionRecord) -> bool:
        if record.key in self.executions:
            return False
        self.executions[record.key] = record
        return True

    async def get_execution(self, wallet: str, cycle_date: str) -> Optional[ExecutionRecord]:
        return self.executions.get((wallet.lower(), cycle_date))

    async def write_cycle_summary(self, summary: Dict[str, Any]) -> None:
        self.cycle_summaries.append(summary)

    async def add_fee_reconciliation(self, item: FeeReconciliationItem) -> FeeReconciliationItem:
        stored = replace(item, id=item.id or uuid.uuid4().hex)
        self.fee_items[stored.id] = stored
        return stored

    async def list_pending_fee_reconciliations(self, limit: int) -> List[FeeReconciliationItem]:
        return [i for i in self.fee_items.values() if not i.resolved][:limit]

    async def update_fee_reconciliation(self, item: FeeReconciliationItem) -> None:
        self.fee_items[item.id] = item

    async def count_pending_fee_reconciliations(self) -> int:
        return sum(1 for i in self.fee_items.values() if not i.resolved)

    async def record_protocol_stats(self, volume: Dict[str, int], fees: Dict[str, int]) -> None:
        for token, amount in volume.items():
            self.protocol_volume[token] = self.protocol_volume.get(token, 0) + amount
        for token, amount in fees.items():
            self.protocol_fees[token] = self.protocol_fees.get(token, 0) + amount


class ConvexLedger(Ledger):
    """Ledger backed by Convex functions under the ``dca`` module."""

    def __init__(
        self,
        client: Optional[ConvexClient] = None,
        retry_policy: RetryPolicy = LEDGER_RETRY_POLICY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._convex = client or get_convex_client()
        self.retry_policy = retry_policy
        self._sleep = sleep

    async def _run(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        outcome = await with_retry(call, self.retry_policy.named(f"ledger_{operation}"), sleep=self._sleep)
        if not outcome.success:
            _slog.error("ledger_operation_failed", operation=operation, kind=outcome.error.kind.value)
            raise LedgerError(operation, outcome.error)
        return outcome.result

    async def _query(self, name: str, args: Optional[Dict[str, Any]] = None) -> Any:
        return await self._run(name, lambda: self._convex.query(f"dca:{name}", args or {}))

    async def _mutation(self, name: str, args: Dict[str, Any]) -> Any:
        return await self._run(name, lambda: self._convex.mutation(f"dca:{name}", args))

    async def get_active_delegations(self, now: Optional[int] = None) -> List[Delegation]:
        data = await self._query("listActiveDelegations", {"now": now} if now is not None else None)
        delegations = [Delegation.from_record(d) for d in data or []]
        if now is not None:
            delegations = [d for d in delegations if not d.is_expired(now)]
        return delegations

    async def get_delegation(self, owner: str) -> Optional[Delegation]:
        data = await self._query("getDelegation", {"owner": owner.lower()})
        return Delegation.from_record(data) if data else None

    async def upsert_delegation(self, delegation: Delegation) -> None:
        record = delegation.to_record()
        record["owner"] = delegation.owner.lower()
        await self._mutation("upsertDelegation", record)

    async def revoke_delegation(self, owner: str) -> bool:
        result = await self._mutation("revokeDelegation", {"owner": owner.lower()})
        return bool(result)

    async def increment_delegation_calls(self, smart_account: str, count: int) -> None:
        await self._mutation("incrementDelegationCalls", {"smartAccount": smart_account, "count": count})

    async def append_execution(self, record: ExecutionRecord) -> bool:
        # The mutation checks the (wallet, cycleDate) index and reports whether it inserted
        result = await self._mutation("appendExecution", record.to_dict())
        if isinstance(result, dict):
            return bool(result.get("inserted"))
        return bool(result)

    async def get_execution(self, wallet: str, cycle_date: str) -> Optional[ExecutionRecord]:
        data = await self._query("getExecution", {"wallet": wallet, "cycleDate": cycle_date})
        return ExecutionRecord.from_dict(data) if data else None

    async def write_cycle_summary(self, summary: Dict[str, Any]) -> None:
        await self._mutation("writeCycleSummary", summary)

    async def add_fee_reconciliation(self, item: FeeReconciliationItem) -> FeeReconciliationItem:
        item_id = await self._mutation("addFeeReconciliation", item.to_dict())
        return replace(item, id=item_id)

    async def list_pending_fee_reconciliations(self, limit: int) -> List[FeeReconciliationItem]:
        data = await self._query("listPendingFeeReconciliations", {"limit": limit})
        return [FeeReconciliationItem.from_dict(d) for d in data or []]

    async def update_fee_reconciliation(self, item: FeeReconciliationItem) -> None:
        await self._mutation("updateFeeReconciliation", {"id": item.id, **item.to_dict()})

    async def count_pending_fee_reconciliations(self) -> int:
        return int(await self._query("countPendingFeeReconciliations") or 0)

    async def record_protocol_stats(self, volume: Dict[str, int], fees: Dict[str, int]) -> None:
        await self._mutation(
            "recordProtocolStats",
            {
                "volume": {token: str(amount) for token, amount in volume.items()},
                "fees": {token: str(amount) for token, amount in fees.items()},
            },
        )


_ledger: Optional[Ledger] = None


def get_ledger() -> Ledger:
    """Convex when configured; otherwise a process-local ledger for local runs."""
    global _ledger
    if _ledger is None:
        if settings.has_convex:
            _ledger = ConvexLedger()
        else:
            _slog.warning("ledger_in_memory", reason="CONVEX_URL not configured")
            _ledger = InMemoryLedger()
    return _ledger

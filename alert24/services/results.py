"""Outcome types returned across component boundaries.

Pipeline entry points never raise into the scheduler: every item produces an
``OperationOutcome`` and a run produces a ``BatchReport`` the caller can log
or return.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..utils.db_utils import is_transient_error, utcnow

logger = logging.getLogger(__name__)

# Error kinds
ERROR_TRANSIENT = "transient"  # network/database, retried next tick
ERROR_INTEGRITY = "integrity"  # missing referenced row
ERROR_CONFIGURATION = "configuration"  # no policy, empty steps
ERROR_CONFLICT = "conflict"  # transition not allowed from the current state
ERROR_UNEXPECTED = "unexpected"


@dataclass
class OperationOutcome:
    """Result of one operation on one item (check, service, incident)."""
    ok: bool
    item_id: Optional[int] = None
    action: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, item_id: Optional[int], action: str, **details) -> "OperationOutcome":
        return cls(ok=True, item_id=item_id, action=action, details=details)

    @classmethod
    def failure(cls, item_id: Optional[int], error: str, kind: str, **details) -> "OperationOutcome":
        return cls(ok=False, item_id=item_id, error=error, error_kind=kind, details=details)

    def to_dict(self) -> dict:
        data = {"ok": self.ok, "item_id": self.item_id, "action": self.action}
        if not self.ok:
            data["error"] = self.error
            data["error_kind"] = self.error_kind
        if self.details:
            data["details"] = self.details
        return data


@dataclass
class BatchReport:
    """Aggregated outcomes of one scheduler run."""
    operation: str
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    outcomes: List[OperationOutcome] = field(default_factory=list)

    def add(self, outcome: OperationOutcome):
        self.outcomes.append(outcome)

    def finish(self) -> "BatchReport":
        self.finished_at = utcnow()
        return self

    @property
    def failures(self) -> List[OperationOutcome]:
        return [o for o in self.outcomes if not o.ok]

    def count(self, action: str) -> int:
        return sum(1 for o in self.outcomes if o.ok and o.action == action)

    def summary(self) -> dict:
        actions: Dict[str, int] = {}
        for outcome in self.outcomes:
            if outcome.ok:
                actions[outcome.action] = actions.get(outcome.action, 0) + 1
        errors: Dict[str, int] = {}
        for outcome in self.failures:
            errors[outcome.error_kind] = errors.get(outcome.error_kind, 0) + 1
        return {
            "operation": self.operation,
            "total": len(self.outcomes),
            "succeeded": len(self.outcomes) - len(self.failures),
            "failed": len(self.failures),
            "actions": actions,
            "errors": errors,
        }

    def log(self):
        """Log the run summary, and each failure individually."""
        summary = self.summary()
        if summary["total"]:
            logger.info(
                f"{self.operation}: {summary['succeeded']} ok, {summary['failed']} failed {summary['actions']}"
            )
        for outcome in self.failures:
            logger.warning(
                f"{self.operation} failed for item {outcome.item_id} ({outcome.error_kind}): {outcome.error}"
            )


def classify_error(exc: BaseException) -> str:
    """Map an exception to an error kind."""
    if is_transient_error(exc):
        return ERROR_TRANSIENT
    return ERROR_UNEXPECTED


async def guarded(
    item_id: Optional[int],
    operation: Callable[[], Awaitable[OperationOutcome]],
    timeout_seconds: float,
    label: str,
) -> OperationOutcome:
    """Run one item's operation with a timeout, turning exceptions into outcomes."""
    try:
        return await asyncio.wait_for(operation(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        logger.warning(f"{label} timed out for item {item_id} after {timeout_seconds}s")
        return OperationOutcome.failure(item_id, f"Timed out after {timeout_seconds}s", ERROR_TRANSIENT)
    except Exception as e:
        kind = classify_error(e)
        if kind == ERROR_UNEXPECTED:
            logger.exception(f"{label} failed for item {item_id}")
        else:
            logger.warning(f"{label} transient failure for item {item_id}: {e}")
        return OperationOutcome.failure(item_id, f"{type(e).__name__}: {e}", kind)

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Optional

from .cache import Cache
from .config import EngineConfig
from .db.session import DbSession
from .errors import RateLimited
from .ledger import ExecutionLedger
from .metrics.registry import GATE_DENIALS_TOTAL

logger = logging.getLogger(__name__)

REASON_CONCURRENCY = "concurrency"
REASON_COOLDOWN = "cooldown"
REASON_TOO_MANY_RECORDS = "too_many_records"


def _cooldown_key(actor: Optional[str]) -> str:
    return f"cooldown:{actor if actor is not None else '-'}"


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    reason: Optional[str] = None
    retry_after: Optional[float] = None
    message: str = ""

    def __bool__(self) -> bool:
        return self.allowed

    def raise_for_denial(self) -> None:
        if not self.allowed:
            raise RateLimited(self.message, reason=self.reason, retry_after=self.retry_after)


class RateGate:
    """
    Submission-time admission control.

    Evaluated once per submission and never blocks: the answer is immediate.
    The concurrency ceiling is checked again under lock when the execution
    row is inserted (see ``confirm_slot``).
    The active-execution count comes from the ledger; cooldown windows live
    in the cache and simply lapse if the cache entry is lost.
    """

    def __init__(
        self,
        ledger: ExecutionLedger,
        cache: Cache,
        config: EngineConfig,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ledger = ledger
        self.cache = cache
        self.config = config
        self.clock = clock

    def attempt(self, actor: Optional[str], record_count: Optional[int] = None) -> GateDecision:
        if not self.config.rate_limiting_enabled:
            return GateDecision(True)

        if record_count is not None and record_count > self.config.max_records_per_action:
            return self._deny(
                actor,
                REASON_TOO_MANY_RECORDS,
                f"{record_count} records exceeds the limit of {self.config.max_records_per_action}",
            )

        cooldown = self.cooldown_remaining(actor)
        if cooldown > 0:
            return self._deny(
                actor,
                REASON_COOLDOWN,
                f"Cooling down after a large operation; retry in {cooldown:.0f}s",
                retry_after=cooldown,
            )

        active = self.active_count(actor)
        if active >= self.config.max_concurrent_actions:
            return self._deny(
                actor,
                REASON_CONCURRENCY,
                f"{active} bulk actions already running (limit {self.config.max_concurrent_actions})",
            )
        return GateDecision(True)

    def confirm_slot(self, session: DbSession, actor: Optional[str]) -> GateDecision:
        """
        Repeat the concurrency check inside the transaction that inserts the
        execution. Two submissions that both passed ``attempt`` cannot both
        take the last slot.
        """
        if not self.config.rate_limiting_enabled:
            return GateDecision(True)
        active = self.ledger.active_count(actor, session)
        if active >= self.config.max_concurrent_actions:
            return self._deny(
                actor,
                REASON_CONCURRENCY,
                f"{active} bulk actions already running (limit {self.config.max_concurrent_actions})",
            )
        return GateDecision(True)

    def _deny(
        self,
        actor: Optional[str],
        reason: str,
        message: str,
        retry_after: Optional[float] = None,
    ) -> GateDecision:
        GATE_DENIALS_TOTAL.labels(reason=reason).inc()
        logger.warning("gate denied actor %s: %s", actor, message)
        return GateDecision(False, reason, retry_after, message)

    def active_count(self, actor: Optional[str]) -> int:
        return self.ledger.active_count(actor)

    def remaining_slots(self, actor: Optional[str]) -> int:
        return max(0, self.config.max_concurrent_actions - self.active_count(actor))

    def set_cooldown(self, actor: Optional[str], seconds: Optional[float] = None) -> None:
        seconds = self.config.cooldown_seconds if seconds is None else seconds
        if seconds <= 0:
            return
        self.cache.put(_cooldown_key(actor), self.clock() + seconds, seconds)

    def clear_cooldown(self, actor: Optional[str]) -> None:
        self.cache.forget(_cooldown_key(actor))

    def cooldown_remaining(self, actor: Optional[str]) -> float:
        until = self.cache.get(_cooldown_key(actor))
        if until is None:
            return 0.0
        return max(0.0, float(until) - self.clock())

"""
Checkout Service — checkout saga state

The saga's state is rebuilt from nothing on every call and lives only as
long as one checkout. It records each committed effect together with the
action that undoes it, so rollback is a walk back over that record rather
than a set of nested conditionals.

State transitions:

    NOT_STARTED → ORDER_CREATED → ITEMS_CREATED → STOCK_PARTIAL → STOCK_RESERVED
                                      │                                │
                                      └────────────→ STOCK_RESERVED ───┼→ CART_CLEARED → COMMITTED
                                                                       └──────────────→ COMMITTED
    any non-terminal state → FAILED

STOCK_RESERVED → COMMITTED directly is the path taken when clearing the
cart fails after everything else committed.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

logger = logging.getLogger(__name__)


class SagaState(str, Enum):
    NOT_STARTED = "NotStarted"
    ORDER_CREATED = "OrderCreated"
    ITEMS_CREATED = "ItemsCreated"
    STOCK_PARTIAL = "StockReserved(partial)"
    STOCK_RESERVED = "StockReserved(full)"
    CART_CLEARED = "CartCleared"
    COMMITTED = "Committed"
    FAILED = "Failed"


TERMINAL_STATES = frozenset({SagaState.COMMITTED, SagaState.FAILED})

TRANSITIONS: dict[SagaState, frozenset[SagaState]] = {
    SagaState.NOT_STARTED: frozenset({SagaState.ORDER_CREATED}),
    SagaState.ORDER_CREATED: frozenset({SagaState.ITEMS_CREATED}),
    SagaState.ITEMS_CREATED: frozenset({SagaState.STOCK_PARTIAL, SagaState.STOCK_RESERVED}),
    SagaState.STOCK_PARTIAL: frozenset({SagaState.STOCK_PARTIAL, SagaState.STOCK_RESERVED}),
    SagaState.STOCK_RESERVED: frozenset({SagaState.CART_CLEARED, SagaState.COMMITTED}),
    SagaState.CART_CLEARED: frozenset({SagaState.COMMITTED}),
    SagaState.COMMITTED: frozenset(),
    SagaState.FAILED: frozenset(),
}


class IllegalTransition(Exception):
    def __init__(self, current: SagaState, target: SagaState) -> None:
        super().__init__(f"Illegal saga transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


Compensator = Callable[[], Awaitable[bool]]


@dataclass
class Effect:
    """A committed write and the action that reverses it."""
    action: str
    compensate: Compensator


@dataclass
class CompensationReport:
    run: int = 0
    failed: int = 0

    @property
    def rollback_complete(self) -> bool:
        return self.failed == 0


@dataclass
class CheckoutSaga:
    user_id: str
    state: SagaState = SagaState.NOT_STARTED
    order_id: str | None = None
    effects: list[Effect] = field(default_factory=list)
    log: list[dict] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, target: SagaState) -> None:
        if target is SagaState.FAILED:
            if self.is_terminal:
                raise IllegalTransition(self.state, target)
        elif target not in TRANSITIONS[self.state]:
            raise IllegalTransition(self.state, target)
        logger.info("Checkout saga for user %s: %s -> %s", self.user_id, self.state.value, target.value)
        self.state = target

    def commit(self) -> None:
        self.transition(SagaState.COMMITTED)
        # committed effects are permanent from here on
        self.effects.clear()

    # ── saga log ──────────────────────────────────

    def begin_step(self, action: str) -> dict:
        entry = {
            "step": len(self.log) + 1,
            "action": action,
            "status": "EXECUTING",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        self.log.append(entry)
        return entry

    @staticmethod
    def complete_step(entry: dict) -> None:
        entry["status"] = "COMPLETED"

    @staticmethod
    def fail_step(entry: dict, error: str) -> None:
        entry["status"] = "FAILED"
        entry["error"] = error

    # ── effects and compensation ──────────────────

    def record(self, action: str, compensate: Compensator) -> None:
        self.effects.append(Effect(action=action, compensate=compensate))

    async def compensate(self) -> CompensationReport:
        """
        Undo recorded effects, newest first, then move to FAILED.

        A compensator that fails (returns False or raises) is counted and
        the remaining ones still run.
        """
        report = CompensationReport()
        for effect in reversed(self.effects):
            entry = self.begin_step(f"{effect.action} (COMPENSATING)")
            try:
                ok = await effect.compensate()
            except Exception as exc:
                logger.exception("Compensation %r raised", effect.action)
                ok = False
                self.fail_step(entry, type(exc).__name__)
            else:
                if ok:
                    self.complete_step(entry)
                else:
                    self.fail_step(entry, "compensation reported failure")
            report.run += 1
            if not ok:
                report.failed += 1
        self.effects.clear()

        if report.failed:
            logger.error(
                "Checkout saga for user %s left %s of %s compensations failed (order %s)",
                self.user_id,
                report.failed,
                report.run,
                self.order_id,
            )
        elif report.run:
            logger.warning(
                "Checkout saga for user %s rolled back %s effects (order %s)",
                self.user_id,
                report.run,
                self.order_id,
            )
        if not self.is_terminal:
            self.transition(SagaState.FAILED)
        return report

# retention_engine/services/retention/scheduler.py
"""
Backlog scheduler.

One round runs cleanup for every registered entity type. If any of them
reported `remaining`, the round asks for a follow-up round through the
`enqueue` callback (a task queue, a background task, ...), up to
MAX_ROUNDS per chain. A new chain only starts from an external trigger.
"""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from sqlalchemy.orm import Session

from retention_engine.logging_config import entity_var, retention_logger, trace_id_var
from retention_engine.services.retention.purge_service import CleanupExecutor
from retention_engine.services.retention.results import CleanupResult

logger = logging.getLogger(__name__)

MAX_ROUNDS = 10


class RoundOutcome(str, Enum):
    """How a backlog round ended."""

    DRAINED = "drained"  # No entity type reported remaining work
    RETRIGGERED = "retriggered"  # Work remains, another round was requested
    CAPPED = "capped"  # Work remains but the round limit was reached


@dataclass
class RoundResult:
    """Result of one backlog round."""

    round: int
    has_remaining: bool = False
    outcome: RoundOutcome = RoundOutcome.DRAINED
    next_round: int | None = None
    results: dict[str, CleanupResult] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def per_entity_results(self) -> dict[str, dict]:
        """Table name -> result dict, or {"error": message} for failures."""
        merged = {table: result.to_dict() for table, result in self.results.items()}
        for table, message in self.errors.items():
            merged[table] = {"error": message}
        return merged

    def to_dict(self) -> dict:
        return {
            "round": self.round,
            "has_remaining": self.has_remaining,
            "outcome": self.outcome.value,
            "next_round": self.next_round,
            "results": self.per_entity_results,
        }


class BacklogScheduler:
    """
    Drives cleanup rounds across all registered entity types.

    Entity types are processed sequentially, each in its own session, and
    an exception from one entity type is logged and recorded without
    affecting the others.
    """

    def __init__(
        self,
        executor: CleanupExecutor,
        session_factory: Callable[[], Session],
        enqueue: Callable[[int], None] | None = None,
        max_rounds: int = MAX_ROUNDS,
    ):
        if max_rounds < 1:
            raise ValueError(f"max_rounds must be at least 1, got {max_rounds}")
        self.executor = executor
        self.session_factory = session_factory
        self.enqueue = enqueue
        self.max_rounds = max_rounds

    def run_backlog_round(self, round_number: int = 1) -> RoundResult:
        """
        Run one round and, if work remains below the cap, enqueue the next.
        """
        self._start_trace(round_number)
        result = self._run_round(round_number)
        if result.next_round is not None and self.enqueue is not None:
            self.enqueue(result.next_round)
        return result

    def drain(self, start_round: int = 1) -> list[RoundResult]:
        """
        Run rounds back to back until drained or capped.

        For hosts without a task queue; never enqueues.
        """
        self._start_trace(start_round)
        rounds = []
        round_number: int | None = start_round
        while round_number is not None:
            result = self._run_round(round_number)
            rounds.append(result)
            round_number = result.next_round
        return rounds

    @staticmethod
    def _start_trace(round_number: int) -> None:
        # Round 1 starts a new chain; follow-up rounds keep the caller's trace
        if round_number == 1 or trace_id_var.get() is None:
            trace_id_var.set(str(uuid.uuid4()))

    def _run_round(self, round_number: int) -> RoundResult:
        result = RoundResult(round=round_number)
        policies = list(self.executor.registry)

        retention_logger.info(
            "round_started",
            f"Backlog round {round_number}/{self.max_rounds} for {len(policies)} entity types",
            round=round_number,
            max_rounds=self.max_rounds,
        )

        for policy in policies:
            table = policy.table_name
            token = entity_var.set(table)
            try:
                with self.session_factory() as db:
                    cleanup = self.executor.run(db, policy.entity)
            except Exception as e:
                result.errors[table] = str(e)
                retention_logger.error(
                    "round_entity_failed",
                    f"Failed to clean up {table} (round {round_number}): {e}",
                    table=table,
                    round=round_number,
                    error=str(e),
                )
                continue
            finally:
                entity_var.reset(token)

            if cleanup is None:
                # Unregistered while the round was running
                continue

            result.results[table] = cleanup
            if not cleanup.skipped and cleanup.remaining:
                result.has_remaining = True

        if result.has_remaining and round_number < self.max_rounds:
            result.outcome = RoundOutcome.RETRIGGERED
            result.next_round = round_number + 1
            retention_logger.info(
                "round_retriggered",
                f"Re-triggering backlog (round {round_number + 1}/{self.max_rounds}): expired rows remain",
                round=round_number + 1,
                max_rounds=self.max_rounds,
            )
        elif result.has_remaining:
            result.outcome = RoundOutcome.CAPPED
            retention_logger.warning(
                "round_capped",
                f"Reached maximum of {self.max_rounds} rounds. Some expired rows remain.",
                round=round_number,
                max_rounds=self.max_rounds,
            )
        else:
            result.outcome = RoundOutcome.DRAINED
            retention_logger.info(
                "round_drained",
                f"Backlog drained after round {round_number}",
                round=round_number,
            )

        return result

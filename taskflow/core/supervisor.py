"""Retry accounting, backoff and per-attempt deadlines."""

import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Tuple

from ..models.core import ErrorHandling, ErrorKind, TaskNode, WorkflowConfig
from .clock import Clock
from .logging import get_logger

logger = get_logger(__name__)

# Any tuple whose first element is the instance id
DeadlineKey = Tuple


class FailureAction(str, Enum):
    RETRY = "retry"
    FAIL = "fail"
    SKIP = "skip"


class RetryDecision:
    """What to do after an attempt failed."""

    def __init__(self, action: FailureAction, next_attempt: Optional[int] = None,
                 delay: float = 0.0, not_before: Optional[datetime] = None):
        self.action = action
        self.next_attempt = next_attempt
        self.delay = delay
        self.not_before = not_before

    def __repr__(self) -> str:
        return f"RetryDecision({self.action.value}, next_attempt={self.next_attempt}, delay={self.delay})"


def backoff_delay(attempt: int, config: WorkflowConfig) -> float:
    """Delay before the attempt following ``attempt``: min(base * 2^attempt, max)."""
    return min(config.retry_base_delay * (2 ** attempt), config.retry_max_delay)


def effective_error_handling(node: TaskNode, config: WorkflowConfig) -> ErrorHandling:
    return node.error_handling or config.error_handling


class RetrySupervisor:
    """Per-node retry policy plus the deadline table of running attempts.

    Attempts are numbered from 1, so a node with ``max_retries = n`` runs at
    most ``n + 1`` attempts. Configuration errors never retry and always fail
    fast regardless of the node's error handling.
    """

    def __init__(self, clock: Clock):
        self.clock = clock
        self._deadlines: Dict[DeadlineKey, datetime] = {}
        self._lock = threading.Lock()

    def decide(
        self,
        attempt: int,
        max_retries: int,
        error_kind: ErrorKind,
        error_handling: ErrorHandling,
        config: WorkflowConfig
    ) -> RetryDecision:
        """
        Decide between another attempt and the error-handling policy.

        Args:
            attempt: Number of the attempt that just failed
            max_retries: Retry budget of the node (or loop iteration)
            error_kind: Classification of the failure
            error_handling: Policy applied once the budget is exhausted
            config: Definition config carrying the backoff parameters

        Returns:
            RetryDecision
        """
        if error_kind == ErrorKind.CONFIGURATION:
            return RetryDecision(FailureAction.FAIL)
        if error_kind == ErrorKind.CANCELLED:
            return RetryDecision(FailureAction.FAIL)
        if attempt <= max_retries:
            delay = backoff_delay(attempt, config)
            return RetryDecision(
                FailureAction.RETRY,
                next_attempt=attempt + 1,
                delay=delay,
                not_before=self.clock.now() + timedelta(seconds=delay)
            )
        if error_handling in (ErrorHandling.CONTINUE, ErrorHandling.SKIP):
            return RetryDecision(FailureAction.SKIP)
        return RetryDecision(FailureAction.FAIL)

    def decide_for_node(self, node: TaskNode, attempt: int, error_kind: ErrorKind,
                        config: WorkflowConfig, max_retries: Optional[int] = None) -> RetryDecision:
        """Decide for a failed attempt of ``node``; ``max_retries`` overrides the node's budget."""
        budget = node.max_retries if max_retries is None else max_retries
        decision = self.decide(
            attempt, budget, error_kind, effective_error_handling(node, config), config
        )
        logger.debug(f"Node {node.node_id} attempt {attempt} failed ({error_kind.value}): {decision!r}")
        return decision

    # Deadlines

    def register(self, key: DeadlineKey, timeout_seconds: Optional[int]) -> Optional[datetime]:
        """Start the deadline of a unit of work. No timeout means no deadline."""
        if not timeout_seconds:
            return None
        deadline = self.clock.now() + timedelta(seconds=timeout_seconds)
        with self._lock:
            self._deadlines[key] = deadline
        return deadline

    def clear(self, key: DeadlineKey):
        with self._lock:
            self._deadlines.pop(key, None)

    def clear_instance(self, instance_id: str):
        with self._lock:
            for key in [k for k in self._deadlines if k[0] == instance_id]:
                del self._deadlines[key]

    def expired(self) -> List[DeadlineKey]:
        """Remove and return every key whose deadline has passed, earliest first."""
        now = self.clock.now()
        with self._lock:
            due = sorted(
                ((deadline, key) for key, deadline in self._deadlines.items() if deadline <= now),
                key=lambda item: item[0]
            )
            for _, key in due:
                del self._deadlines[key]
        return [key for _, key in due]

    def pending_count(self) -> int:
        with self._lock:
            return len(self._deadlines)

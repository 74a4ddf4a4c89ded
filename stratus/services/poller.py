from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
import time
from typing import Callable, Literal

from stratus.provisioner import Provisioner, StackDescription, StackEvent
from stratus.services.errors import StackTimeoutException

logger = logging.getLogger(__name__)

PollOperation = Literal["create", "update", "delete", "import", "settle"]
StatusCallback = Callable[[str, str], None]

SUCCESS_STATUSES: dict[str, frozenset[str]] = {
    "create": frozenset({"CREATE_COMPLETE"}),
    "update": frozenset({"UPDATE_COMPLETE"}),
    "delete": frozenset({"DELETE_COMPLETE"}),
    "import": frozenset({"IMPORT_COMPLETE"}),
}
ROLLBACK_STATUSES = frozenset(
    {
        "ROLLBACK_COMPLETE",
        "UPDATE_ROLLBACK_COMPLETE",
        "IMPORT_ROLLBACK_COMPLETE",
    }
)
STACK_ABSENT = "DOES_NOT_EXIST"
_IGNORED_FAILURE_REASONS = ("resource creation cancelled", "resource update cancelled")
_MAX_REPORTED_EVENTS = 5


def is_in_progress(status: str | None) -> bool:
    return bool(status) and status.endswith("_IN_PROGRESS")


def is_failure(status: str | None) -> bool:
    return bool(status) and (status.endswith("_FAILED") or status in ROLLBACK_STATUSES)


@dataclass(frozen=True)
class StackState:
    stack_name: str
    status: str
    succeeded: bool
    reason: str | None = None
    outputs: dict[str, str] = field(default_factory=dict)
    events: tuple[StackEvent, ...] = ()
    elapsed: float = 0.0


class StackStatePoller:
    """Poll CloudFormation until a stack operation reaches a terminal state."""

    def __init__(
        self,
        provisioner: Provisioner,
        *,
        interval: float = 10.0,
        timeout: float = 3600.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if interval <= 0 or timeout <= 0:
            raise ValueError("interval and timeout must be positive")
        self._provisioner = provisioner
        self.interval = interval
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock

    def wait(
        self,
        stack_name: str,
        *,
        operation: PollOperation,
        since: datetime | None = None,
        on_status: StatusCallback | None = None,
    ) -> StackState:
        started = self._clock()
        last_status: str | None = None
        first = True
        while True:
            description = self._provisioner.describe_stack(stack_name=stack_name)
            status = description.status if description.exists else STACK_ABSENT
            elapsed = self._clock() - started
            if first or status != last_status:
                logger.info("Stack %s status=%s (%.0fs)", stack_name, status, elapsed)
                if on_status is not None:
                    on_status(stack_name, status)
                last_status, first = status, False

            if (state := self._terminal_state(description, operation, since=since, elapsed=elapsed)) is not None:
                return state

            if elapsed >= self.timeout:
                raise StackTimeoutException(
                    f"Timed out after {self.timeout:.0f}s waiting for stack {stack_name} ({operation}); "
                    f"last status {status}",
                    stack_name=stack_name,
                    stack_status=status,
                )
            self._sleep(self.interval)

    def _terminal_state(
        self,
        description: StackDescription,
        operation: PollOperation,
        *,
        since: datetime | None,
        elapsed: float,
    ) -> StackState | None:
        stack_name = description.stack_name
        if not description.exists:
            if operation in ("delete", "settle"):
                return StackState(stack_name=stack_name, status=STACK_ABSENT, succeeded=True, elapsed=elapsed)
            return StackState(
                stack_name=stack_name,
                status=STACK_ABSENT,
                succeeded=False,
                reason=f"Stack {stack_name} does not exist",
                elapsed=elapsed,
            )

        status = description.status or ""
        if operation == "settle":
            if is_in_progress(status):
                return None
            return StackState(
                stack_name=stack_name,
                status=status,
                succeeded=True,
                outputs=dict(description.outputs),
                elapsed=elapsed,
            )
        if status in SUCCESS_STATUSES[operation]:
            return StackState(
                stack_name=stack_name,
                status=status,
                succeeded=True,
                outputs=dict(description.outputs),
                elapsed=elapsed,
            )
        if is_failure(status):
            events = self._failure_events(stack_name, since=since)
            return StackState(
                stack_name=stack_name,
                status=status,
                succeeded=False,
                reason=summarize_failure(description, events),
                outputs=dict(description.outputs),
                events=tuple(events),
                elapsed=elapsed,
            )
        return None

    def _failure_events(self, stack_name: str, *, since: datetime | None) -> list[StackEvent]:
        events = self._provisioner.describe_stack_events(stack_name=stack_name, since=since)
        failed = [
            event
            for event in events
            if event.status
            and event.status.endswith("_FAILED")
            and not (event.reason or "").lower().startswith(_IGNORED_FAILURE_REASONS)
        ]
        # describe-stack-events lists newest first; the root cause is the oldest failure
        failed.reverse()
        return failed[:_MAX_REPORTED_EVENTS]


def summarize_failure(description: StackDescription, events: list[StackEvent]) -> str:
    parts = [
        f"{event.logical_id} ({event.resource_type}) {event.status}: {event.reason or 'no reason given'}"
        for event in events
    ]
    if not parts:
        return f"{description.status}: {description.status_reason or 'no reason given'}"
    return "; ".join(parts)

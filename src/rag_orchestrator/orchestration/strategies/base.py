"""Abstract base class for task-type strategies.

A strategy owns everything specific to one task type: its states, its
transition table, the work performed in each working state, and the
retry policy that applies after a failure. The engine is generic and
only ever asks the strategy which event is legal and what a stage
produced.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Protocol

from pydantic import ValidationError

from rag_orchestrator.errors import StrategyRegistrationError, TaskValidationError
from rag_orchestrator.orchestration.models import Task, TaskContextBase, TaskType


class TaskEvent(str, Enum):
    """Events every strategy understands."""

    FAIL = "fail"
    RETRY = "retry"
    CANCEL = "cancel"
    PAUSE = "pause"
    RESUME = "resume"


def state_name(value: str | Enum) -> str:
    return value.value if isinstance(value, Enum) else str(value)


@dataclass(frozen=True)
class Transition:
    source: str
    event: str
    target: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "source", state_name(self.source))
        object.__setattr__(self, "event", state_name(self.event))
        object.__setattr__(self, "target", state_name(self.target))


@dataclass
class StageOutcome:
    """What a stage produced.

    Attributes
    ----------
    events:
        Events to commit in order; usually one.
    context:
        Replacement context to persist with the first transition.
    """

    events: tuple[str, ...]
    context: TaskContextBase | None = None

    @classmethod
    def of(cls, *events: str | Enum, context: TaskContextBase | None = None) -> StageOutcome:
        return cls(events=tuple(state_name(e) for e in events), context=context)


class StageReporter(Protocol):
    """Handle a running stage uses to persist intermediate work."""

    async def checkpoint(self, context: TaskContextBase, progress: float | None = None) -> None:
        """Persist *context* and *progress*.

        Raises :class:`~rag_orchestrator.errors.StageInterrupted` when the
        task has been cancelled or paused since the stage began.
        """
        ...


class TaskStrategy(ABC):
    """Execution policy for one :class:`TaskType`.

    Subclasses declare the class attributes below and implement
    :meth:`execute_stage` for every state listed in :attr:`stage_states`.
    """

    task_type: ClassVar[TaskType]
    context_model: ClassVar[type[TaskContextBase]]
    initial_state: ClassVar[str]
    final_states: ClassVar[frozenset[str]]
    success_state: ClassVar[str]
    failed_state: ClassVar[str]
    stage_states: ClassVar[frozenset[str]]
    transitions: ClassVar[tuple[Transition, ...]]
    give_up_event: ClassVar[str | None] = None
    interruptible_states: ClassVar[frozenset[str]] = frozenset()
    progress_by_state: ClassVar[Mapping[str, float]] = {}
    checkpoint_states: ClassVar[frozenset[str]] = frozenset()
    max_retries: int = 3

    def __init__(self) -> None:
        self._table: dict[tuple[str, str], str] = {}
        for t in self.transitions:
            key = (t.source, t.event)
            if key in self._table and self._table[key] != t.target:
                raise StrategyRegistrationError(
                    f"{type(self).__name__}: ambiguous transition {t.source!r} --{t.event}-->"
                )
            self._table[key] = t.target
        self._validate_table()

    def _validate_table(self) -> None:
        states = {t.source for t in self.transitions} | {t.target for t in self.transitions}
        for state in self.stage_states:
            if (state, TaskEvent.FAIL.value) not in self._table:
                raise StrategyRegistrationError(f"{type(self).__name__}: stage state {state!r} has no fail edge")
        for state in states - self.final_states:
            if (state, TaskEvent.CANCEL.value) not in self._table:
                raise StrategyRegistrationError(f"{type(self).__name__}: state {state!r} cannot be cancelled")

    # -- table queries --------------------------------------------------------

    def next_state(self, state: str, event: str | Enum) -> str | None:
        return self._table.get((state_name(state), state_name(event)))

    def events_from(self, state: str) -> list[str]:
        return [event for (source, event) in self._table if source == state]

    def is_final(self, state: str) -> bool:
        return state in self.final_states

    def has_stage(self, state: str) -> bool:
        return state in self.stage_states

    def progress_for(self, state: str) -> float | None:
        return self.progress_by_state.get(state)

    # -- context --------------------------------------------------------------

    def parse_context(self, context: TaskContextBase | Mapping[str, Any]) -> TaskContextBase:
        """Validate caller input into this strategy's context model."""
        if isinstance(context, self.context_model):
            return context
        if isinstance(context, TaskContextBase):
            raise TaskValidationError(
                f"{type(context).__name__} is not a valid context for {self.task_type.value} tasks"
            )
        try:
            return self.context_model.model_validate(dict(context))
        except ValidationError as exc:
            raise TaskValidationError(f"Invalid {self.task_type.value} context: {exc}") from exc

    # -- work -----------------------------------------------------------------

    @abstractmethod
    async def execute_stage(self, state: str, task: Task, reporter: StageReporter) -> StageOutcome:
        """Do the work of *state* and return the events to commit.

        Stage work must be idempotent: after a crash or retry the same
        stage may run again for the same task.
        """
        ...

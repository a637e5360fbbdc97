"""Core contracts for forgeflow workflows: definitions, step context and messages."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import (
    Annotated,
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Literal,
    Optional,
    Type,
    TypeVar,
    Union,
)

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .errors import StepError
from .persistence.models import RunError, RunStatus

COMPLETION_STEP = "complete"

ModelT = TypeVar("ModelT", bound=BaseModel)


class StepContext(BaseModel):
    """Everything a step function may read.

    Prior outputs are the stored results of succeeded steps, so a step never
    needs an earlier step to run again to see its result.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    run_id: str
    definition_name: str
    idempotency_key: str
    step_name: str = ""
    attempt: int = 1
    input: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    # Engine time when the step was entered.
    now: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    deps: Any = Field(default=None, exclude=True)

    def parse_input(self, model: Type[ModelT]) -> ModelT:
        """Validate the run input snapshot as ``model``."""
        return model.model_validate(self.input)

    def output(self, step_name: str) -> Any:
        """Return the stored output of a succeeded step."""
        if step_name not in self.outputs:
            raise KeyError(f"Step '{step_name}' has no recorded output")
        return self.outputs[step_name]


StepFn = Callable[[StepContext], Awaitable[Any]]
CompletionHook = Callable[[StepContext], Awaitable[Any]]
FailureHook = Callable[[StepContext, StepError], Awaitable[None]]


class RunStep(BaseModel):
    """Step that calls a function and records its output."""

    kind: Literal["run"] = "run"
    name: str
    fn: StepFn
    timeout: Optional[float] = None
    max_attempts: Optional[int] = None


class SleepStep(BaseModel):
    """Durable pause; ``compute`` overrides the fixed ``seconds`` when given."""

    kind: Literal["sleep"] = "sleep"
    name: str
    seconds: float = 0.0
    compute: Optional[Callable[[StepContext], float]] = None

    def duration_for(self, context: StepContext) -> float:
        if self.compute is not None:
            return float(self.compute(context))
        return self.seconds


Step = Annotated[Union[RunStep, SleepStep], Field(discriminator="kind")]


class WorkflowDefinition(BaseModel):
    """Ordered, linear list of steps plus lifecycle hooks."""

    name: str
    steps: List[Step]
    input_model: Optional[Type[BaseModel]] = None
    on_complete: Optional[CompletionHook] = None
    on_failure: Optional[FailureHook] = None
    description: Optional[str] = None

    @model_validator(mode="after")
    def _check_steps(self) -> "WorkflowDefinition":
        if not self.steps:
            raise ValueError(f"Workflow '{self.name}' has no steps")
        names = [step.name for step in self.steps]
        if len(names) != len(set(names)):
            raise ValueError(f"Workflow '{self.name}' has duplicate step names")
        if COMPLETION_STEP in names:
            raise ValueError(f"Step name '{COMPLETION_STEP}' is reserved")
        return self

    def plan(self) -> List[Union[RunStep, SleepStep]]:
        """Steps in execution order, including the completion hook step."""
        plan: List[Union[RunStep, SleepStep]] = list(self.steps)
        if self.on_complete is not None:
            plan.append(RunStep(name=COMPLETION_STEP, fn=self.on_complete))
        return plan

    def step_name(self, index: int) -> Optional[str]:
        plan = self.plan()
        return plan[index].name if 0 <= index < len(plan) else None


class WorkItem(BaseModel):
    """Unit of work exchanged over the transport: advance one run."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: Literal["trigger", "resume"]
    run_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    delivery_attempt: int = 1

    def to_json(self) -> str:
        """Serialize work item to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "WorkItem":
        """Deserialize work item from JSON."""
        return cls.model_validate_json(data)

    def redelivery(self) -> "WorkItem":
        """Copy of this item for another delivery attempt."""
        return self.model_copy(
            update={
                "message_id": str(uuid.uuid4()),
                "delivery_attempt": self.delivery_attempt + 1,
            }
        )


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TriggerRequest(_CamelModel):
    """Inbound request to start a logical operation."""

    definition_name: str
    idempotency_key: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class TriggerResult(_CamelModel):
    """Answer to a trigger: the run handling the operation."""

    run_id: str
    created: bool
    status: RunStatus


class RunStatusView(_CamelModel):
    """Read-only projection of a run for status queries."""

    run_id: str
    definition_name: str
    idempotency_key: str
    status: RunStatus
    current_step: Optional[str] = None
    error: Optional[RunError] = None
    result: Optional[Any] = None
    created_at: datetime
    updated_at: datetime

"""Step execution for forgeflow workflows."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from pydantic import TypeAdapter

from .contracts import RunStep, StepContext
from .errors import ErrorCode, StepError
from .persistence import StepRecord, StepStatus, WorkflowRepository, WorkflowRun, utcnow
from .utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_STEP_TIMEOUT = 300.0

_ANY = TypeAdapter(Any)


def to_jsonable(value: Any) -> Any:
    """Convert a step result (pydantic models included) to plain JSON data."""
    return _ANY.dump_python(value, mode="json")


@dataclass
class StepOutcome:
    """What happened to one step attempt."""

    record: StepRecord
    output: Any = None
    error: Optional[StepError] = None
    retry_delay: Optional[float] = None

    @property
    def succeeded(self) -> bool:
        return self.record.status == StepStatus.SUCCEEDED

    @property
    def will_retry(self) -> bool:
        return self.record.status == StepStatus.RETRYING


class StepExecutor:
    """Runs a single step attempt and persists its outcome.

    A ``running`` record is written before the step function is invoked and
    closed before ``execute`` returns, so a crash in between leaves an open
    record that the orchestrator detects on the next pass.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        retry_policy: RetryPolicy | None = None,
        default_timeout: float = DEFAULT_STEP_TIMEOUT,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._retry_policy = retry_policy or RetryPolicy()
        self._default_timeout = default_timeout
        self._clock = clock

    async def execute(
        self, run: WorkflowRun, index: int, step: RunStep, context: StepContext
    ) -> StepOutcome:
        """Invoke ``step`` once with ``context`` and record the result."""
        record = await self._repository.start_step(
            run.run_id, index, step.name, context.attempt, self._clock()
        )
        timeout = step.timeout or self._default_timeout
        logger.info(
            f"Running step {step.name} (attempt {context.attempt}) for run {run.run_id}"
        )

        try:
            result = await asyncio.wait_for(step.fn(context), timeout=timeout)
            output = to_jsonable(result)
        except asyncio.TimeoutError:
            error = StepError(
                f"Step {step.name} timed out after {timeout}s",
                code=ErrorCode.STEP_TIMEOUT,
                retryable=True,
            )
        except StepError as exc:
            error = exc
        except Exception as exc:
            logger.exception(
                f"Step {step.name} raised an unexpected error for run {run.run_id}"
            )
            error = StepError(
                str(exc) or type(exc).__name__,
                code=ErrorCode.UNEXPECTED_ERROR,
                retryable=True,
            )
        else:
            closed = await self._repository.finish_step(
                record.id, StepStatus.SUCCEEDED, self._clock(), output=output
            )
            logger.info(f"Step {step.name} succeeded for run {run.run_id}")
            return StepOutcome(record=closed or record, output=output)

        decision = self._retry_policy.evaluate(error, context.attempt, step.max_attempts)
        status = StepStatus.RETRYING if decision.retry else StepStatus.FAILED
        closed = await self._repository.finish_step(
            record.id, status, self._clock(), error=error.to_detail()
        )
        if decision.retry:
            logger.warning(
                f"Step {step.name} failed for run {run.run_id} "
                f"({error.code}: {error.message}); retrying in {decision.delay:.1f}s"
            )
        else:
            logger.error(
                f"Step {step.name} failed for run {run.run_id} "
                f"({error.code}: {error.message}); {decision.reason}"
            )
        return StepOutcome(
            record=closed or record,
            error=error,
            retry_delay=decision.delay if decision.retry else None,
        )

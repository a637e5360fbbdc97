"""Workflow orchestrator: drives a run through its steps."""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .contracts import (
    COMPLETION_STEP,
    RunStep,
    SleepStep,
    StepContext,
    WorkflowDefinition,
)
from .errors import ErrorCode, StepError
from .execute import StepExecutor
from .persistence import (
    RunError,
    RunStatus,
    StepRecord,
    StepStatus,
    TimerKind,
    WorkflowRepository,
    WorkflowRun,
    utcnow,
)
from .registry import REGISTRY, WorkflowRegistry
from .scheduler import SleepScheduler
from .utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


class WorkflowOrchestrator:
    """Advances workflow runs one pass at a time.

    A pass claims the run, replays stored outputs of succeeded steps and
    executes the first step without a succeeded record. It keeps going until
    the run completes, fails or has to wait on a timer. Only the worker that
    wins the claim advances a run, so duplicate resumes are no-ops.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        registry: WorkflowRegistry = REGISTRY,
        deps: Any = None,
        retry_policy: RetryPolicy | None = None,
        executor: StepExecutor | None = None,
        scheduler: SleepScheduler | None = None,
        clock: Callable[[], datetime] = utcnow,
        stale_after: float = 600.0,
    ) -> None:
        self._repository = repository
        self._registry = registry
        self.deps = deps
        self._retry_policy = retry_policy or RetryPolicy()
        self._executor = executor or StepExecutor(
            repository, self._retry_policy, clock=clock
        )
        self._scheduler = scheduler or SleepScheduler(repository, clock=clock)
        self._clock = clock
        self._stale_after = stale_after

    async def advance(self, run_id: str) -> Optional[WorkflowRun]:
        """Run one pass over ``run_id``.

        Returns the run as left by this pass, or ``None`` when the run is
        owned by another worker, already finished or does not exist.
        """
        now = self._clock()
        run = await self._repository.claim_run(
            run_id,
            (RunStatus.PENDING, RunStatus.SLEEPING),
            now,
            stale_before=now - timedelta(seconds=self._stale_after),
        )
        if run is None:
            logger.info(f"Run {run_id} not claimable; skipping")
            return None

        try:
            definition = self._registry.get(run.definition_name)
            if definition is None:
                error = StepError(
                    f"No workflow registered as '{run.definition_name}'",
                    code=ErrorCode.UNKNOWN_WORKFLOW,
                    retryable=False,
                )
                await self._fail(run, None, {}, error)
                return run

            logger.info(f"Advancing run {run.run_id} ({definition.name})")
            return await self._drive(run, definition)
        except Exception:
            await self._release(run.run_id)
            raise

    async def _release(self, run_id: str) -> None:
        """Give up the claim after a pass aborted so a redelivery can retry."""
        try:
            released = await self._repository.release_run(run_id, self._clock())
        except Exception:
            logger.exception(
                f"Could not release run {run_id}; the stale sweep will recover it"
            )
            return
        if released:
            logger.warning(f"Released run {run_id} after an aborted pass")

    async def _drive(
        self, run: WorkflowRun, definition: WorkflowDefinition
    ) -> WorkflowRun:
        plan = definition.plan()
        history = await self._load_history(run, plan)
        outputs: Dict[str, Any] = {}
        for index, step in enumerate(plan):
            record = _succeeded(history[index])
            if record is not None and isinstance(step, RunStep):
                outputs[step.name] = record.output

        index = 0
        while index < len(plan) and _succeeded(history[index]) is not None:
            index += 1
        run.current_step = index

        while index < len(plan):
            step = plan[index]
            context = self._context(run, step.name, outputs)

            if isinstance(step, SleepStep):
                if not await self._pass_sleep(run, index, step, context, history[index]):
                    return run
            else:
                records = history[index]
                last = records[-1] if records else None
                if last is not None and last.status == StepStatus.FAILED:
                    # Terminal failure recorded before the run was saved.
                    await self._fail(run, definition, outputs, _record_error(last), last)
                    return run
                if last is not None and last.status == StepStatus.RETRYING:
                    timer = await self._repository.latest_timer(run.run_id, index)
                    if (
                        timer is not None
                        and timer.kind == TimerKind.RETRY
                        and timer.wake_at > self._clock()
                    ):
                        await self._park(run, f"retry of {step.name} not yet due")
                        return run

                attempt = len(records) + 1
                limit = step.max_attempts or self._retry_policy.max_attempts
                if attempt > limit:
                    await self._fail(run, definition, outputs, _record_error(last), last)
                    return run

                outcome = await self._executor.execute(
                    run, index, step, context.model_copy(update={"attempt": attempt})
                )
                records.append(outcome.record)
                if outcome.will_retry:
                    if outcome.retry_delay:
                        run.updated_at = self._clock()
                        wake_at = run.updated_at + timedelta(seconds=outcome.retry_delay)
                        await self._scheduler.schedule(
                            run, index, wake_at, kind=TimerKind.RETRY
                        )
                        return run
                    continue
                if not outcome.succeeded:
                    await self._fail(run, definition, outputs, outcome.error, outcome.record)
                    return run
                outputs[step.name] = outcome.output

            index += 1
            run.current_step = index
            run.updated_at = self._clock()
            await self._repository.save_run(run)

        run.status = RunStatus.COMPLETED
        run.result = outputs.get(COMPLETION_STEP)
        run.updated_at = self._clock()
        await self._repository.save_run(run)
        logger.info(f"Run {run.run_id} ({definition.name}) completed")
        return run

    async def _load_history(
        self, run: WorkflowRun, plan: List[RunStep | SleepStep]
    ) -> Dict[int, List[StepRecord]]:
        """Step records grouped by index, with interrupted attempts closed."""
        history: Dict[int, List[StepRecord]] = defaultdict(list)
        for record in await self._repository.list_steps(run.run_id):
            if (
                record.status == StepStatus.RUNNING
                and record.step_index < len(plan)
                and isinstance(plan[record.step_index], RunStep)
            ):
                error = StepError(
                    f"Attempt {record.attempt} of {record.step_name} was interrupted",
                    code=ErrorCode.INTERRUPTED,
                    retryable=True,
                )
                closed = await self._repository.finish_step(
                    record.id, StepStatus.RETRYING, self._clock(), error=error.to_detail()
                )
                logger.warning(
                    f"Closed interrupted attempt {record.attempt} of "
                    f"{record.step_name} for run {run.run_id}"
                )
                record = closed or record
            history[record.step_index].append(record)
        return history

    async def _pass_sleep(
        self,
        run: WorkflowRun,
        index: int,
        step: SleepStep,
        context: StepContext,
        records: List[StepRecord],
    ) -> bool:
        """Handle a sleep step. Returns ``True`` once the sleep has elapsed."""
        open_record = next(
            (r for r in reversed(records) if r.status == StepStatus.RUNNING), None
        )
        timer = await self._repository.latest_timer(run.run_id, index)
        now = self._clock()

        if timer is None or timer.kind != TimerKind.SLEEP:
            if open_record is None:
                open_record = await self._repository.start_step(
                    run.run_id, index, step.name, 1, now
                )
                records.append(open_record)
            seconds = max(0.0, step.duration_for(context))
            run.updated_at = now
            await self._scheduler.schedule(run, index, now + timedelta(seconds=seconds))
            return False

        if timer.wake_at > now:
            await self._park(run, f"{step.name} wakes at {timer.wake_at.isoformat()}")
            return False

        if open_record is None:
            open_record = await self._repository.start_step(
                run.run_id, index, step.name, 1, now
            )
        closed = await self._repository.finish_step(
            open_record.id, StepStatus.SUCCEEDED, now
        )
        records.append(closed or open_record)
        logger.info(f"Run {run.run_id} woke from {step.name}")
        return True

    async def _park(self, run: WorkflowRun, reason: str) -> None:
        """Return a run to ``sleeping`` without scheduling a new timer."""
        run.status = RunStatus.SLEEPING
        run.updated_at = self._clock()
        await self._repository.save_run(run)
        logger.info(f"Run {run.run_id} parked: {reason}")

    async def _fail(
        self,
        run: WorkflowRun,
        definition: Optional[WorkflowDefinition],
        outputs: Dict[str, Any],
        error: Optional[StepError],
        record: Optional[StepRecord] = None,
    ) -> None:
        error = error or StepError("Run failed", retryable=False)
        step_name = record.step_name if record is not None else None
        if definition is not None and definition.on_failure is not None:
            context = self._context(run, step_name or "", outputs)
            try:
                await definition.on_failure(context, error)
            except Exception:
                logger.exception(f"Failure hook of {definition.name} raised for run {run.run_id}")

        run.status = RunStatus.FAILED
        run.error = RunError(
            code=error.code,
            message=error.message,
            step_name=step_name,
            attempt=record.attempt if record is not None else None,
        )
        run.updated_at = self._clock()
        await self._repository.save_run(run)
        logger.error(
            f"Run {run.run_id} ({run.definition_name}) failed at "
            f"{step_name or 'dispatch'}: {error.code}: {error.message}"
        )

    def _context(
        self, run: WorkflowRun, step_name: str, outputs: Dict[str, Any]
    ) -> StepContext:
        return StepContext(
            run_id=run.run_id,
            definition_name=run.definition_name,
            idempotency_key=run.idempotency_key,
            step_name=step_name,
            input=run.input,
            outputs=dict(outputs),
            now=self._clock(),
            deps=self.deps,
        )


def _succeeded(records: List[StepRecord]) -> Optional[StepRecord]:
    return next((r for r in records if r.status == StepStatus.SUCCEEDED), None)


def _record_error(record: Optional[StepRecord]) -> StepError:
    detail = (record.error if record is not None else None) or {}
    return StepError(
        detail.get("message", "Step failed"),
        code=detail.get("code", ErrorCode.UNEXPECTED_ERROR),
        retryable=False,
    )

"""Ingress: authenticated triggers, resumes and status queries."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from .contracts import (
    RunStatusView,
    TriggerRequest,
    TriggerResult,
    WorkflowDefinition,
    WorkItem,
)
from .errors import InvalidPayloadError, RunNotFoundError
from .idempotency import IdempotencyGuard
from .persistence import WorkflowRepository, WorkflowRun
from .registry import REGISTRY, WorkflowRegistry
from .security import CanonicalMessage, TokenService
from .transports import BaseTransport

logger = logging.getLogger(__name__)

WORK_TOPIC = "forgeflow.work"


class EventDispatcher:
    """Service responsible for starting and resuming workflow runs.

    Triggers and resumes only enqueue work; a worker performs the actual
    advance. Delivery is at-least-once and every consumer tolerates
    duplicates.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        transport: BaseTransport,
        tokens: TokenService,
        registry: WorkflowRegistry = REGISTRY,
        guard: Optional[IdempotencyGuard] = None,
        topic: str = WORK_TOPIC,
    ) -> None:
        self._repository = repository
        self._transport = transport
        self.tokens = tokens
        self._registry = registry
        self._guard = guard or IdempotencyGuard(repository)
        self.topic = topic

    async def trigger(
        self, request: TriggerRequest, signature: Optional[str]
    ) -> TriggerResult:
        """Start the operation named by ``request`` unless it already has a run.

        Raises:
            AuthenticationError: The signature does not cover this request.
            UnknownWorkflowError: No definition is registered under the name.
            InvalidPayloadError: The payload fails the definition's input model.
        """
        self.tokens.verify_trigger(
            CanonicalMessage(
                definition_name=request.definition_name,
                idempotency_key=request.idempotency_key,
                payload=request.payload,
            ),
            signature,
        )
        definition = self._registry.require(request.definition_name)
        payload = _validate_payload(definition, request.payload)

        acquisition = await self._guard.acquire(
            definition.name, request.idempotency_key, payload
        )
        run = acquisition.run
        if acquisition.created:
            await self._transport.publish(
                self.topic, WorkItem(kind="trigger", run_id=run.run_id)
            )
        return TriggerResult(run_id=run.run_id, created=acquisition.created, status=run.status)

    async def resume(self, run_id: str, token: Optional[str]) -> WorkflowRun:
        """Enqueue another pass over ``run_id``.

        Resuming a run that is mid-step, finished or already resumed is
        harmless; the orchestrator's claim turns it into a no-op.
        """
        self.tokens.verify_resume_token(run_id, token)
        run = await self._repository.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found")
        await self._transport.publish(self.topic, WorkItem(kind="resume", run_id=run_id))
        logger.info(f"Resume queued for run {run_id} ({run.status.value})")
        return run

    async def wake(self, run_id: str) -> WorkflowRun:
        """Resume ``run_id`` on behalf of the engine with a fresh internal token."""
        return await self.resume(run_id, self.tokens.issue_resume_token(run_id))

    async def status(self, run_id: str) -> Optional[RunStatusView]:
        run = await self._repository.get_run(run_id)
        return self._view(run) if run else None

    async def status_by_key(
        self, definition_name: str, idempotency_key: str
    ) -> Optional[RunStatusView]:
        run = await self._guard.lookup(definition_name, idempotency_key)
        return self._view(run) if run else None

    def _view(self, run: WorkflowRun) -> RunStatusView:
        definition = self._registry.get(run.definition_name)
        current = definition.step_name(run.current_step) if definition else None
        return RunStatusView(
            run_id=run.run_id,
            definition_name=run.definition_name,
            idempotency_key=run.idempotency_key,
            status=run.status,
            current_step=current,
            error=run.error,
            result=run.result,
            created_at=run.created_at,
            updated_at=run.updated_at,
        )


def _validate_payload(
    definition: WorkflowDefinition, payload: Dict[str, Any]
) -> Dict[str, Any]:
    """Validate ``payload`` and return the snapshot stored on the run."""
    if definition.input_model is None:
        return dict(payload)
    try:
        model = definition.input_model.model_validate(payload)
    except ValidationError as exc:
        raise InvalidPayloadError(
            f"Invalid payload for {definition.name}: {exc.error_count()} error(s)"
        ) from exc
    return model.model_dump(mode="json")

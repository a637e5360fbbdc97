"""HTTP surface: trigger, resume and status endpoints."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse

from . import __version__
from .contracts import RunStatusView, TriggerRequest
from .errors import (
    AuthenticationError,
    InvalidPayloadError,
    RunNotFoundError,
    UnknownWorkflowError,
)
from .runtime import ForgeflowRuntime

logger = logging.getLogger(__name__)


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def create_app(runtime: ForgeflowRuntime) -> FastAPI:
    """FastAPI application bound to ``runtime``'s dispatcher."""
    dispatcher = runtime.dispatcher
    app = FastAPI(title="forgeflow", version=__version__)

    @app.post("/workflows/trigger")
    async def trigger(
        request: TriggerRequest,
        x_forgeflow_signature: Optional[str] = Header(default=None),
    ) -> JSONResponse:
        try:
            result = await dispatcher.trigger(request, x_forgeflow_signature)
        except AuthenticationError as e:
            logger.warning(f"Rejected trigger for {request.definition_name}: {e}")
            raise HTTPException(status_code=401, detail=str(e))
        except (UnknownWorkflowError, InvalidPayloadError) as e:
            raise HTTPException(status_code=400, detail=str(e))
        return JSONResponse(
            status_code=202 if result.created else 200,
            content=result.model_dump(mode="json", by_alias=True),
        )

    @app.post("/workflows/runs/{run_id}/resume", status_code=202)
    async def resume(
        run_id: str, authorization: Optional[str] = Header(default=None)
    ) -> dict:
        try:
            run = await dispatcher.resume(run_id, _bearer(authorization))
        except AuthenticationError as e:
            logger.warning(f"Rejected resume for run {run_id}: {e}")
            raise HTTPException(status_code=401, detail=str(e))
        except RunNotFoundError:
            raise HTTPException(status_code=404, detail="Run not found")
        return {"runId": run.run_id, "status": run.status.value}

    @app.get(
        "/workflows/runs/{run_id}",
        response_model=RunStatusView,
        response_model_by_alias=True,
    )
    async def run_status(run_id: str) -> RunStatusView:
        view = await dispatcher.status(run_id)
        if view is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return view

    @app.get(
        "/workflows/{definition_name}/keys/{idempotency_key}",
        response_model=RunStatusView,
        response_model_by_alias=True,
    )
    async def key_status(definition_name: str, idempotency_key: str) -> RunStatusView:
        view = await dispatcher.status_by_key(definition_name, idempotency_key)
        if view is None:
            raise HTTPException(status_code=404, detail="No run for key")
        return view

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    return app

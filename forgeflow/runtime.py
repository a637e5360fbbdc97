"""Wiring of repository, transport, dispatcher, scheduler and worker."""

from __future__ import annotations

import importlib
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from .config import ForgeflowConfig, load_config
from .dispatch import EventDispatcher
from .errors import ConfigurationError
from .execute import StepExecutor
from .orchestrator import WorkflowOrchestrator
from .persistence import WorkflowRepository, get_repository, utcnow
from .registry import REGISTRY, WorkflowRegistry
from .scheduler import SleepScheduler
from .security import TokenService
from .transports import BaseTransport, get_transport
from .utils.retry import RetryPolicy
from .worker import WorkflowWorker
from .workflows import WorkflowServices


@dataclass
class ForgeflowRuntime:
    """Every engine component of one process, sharing one repository."""

    config: ForgeflowConfig
    repository: WorkflowRepository
    transport: BaseTransport
    tokens: TokenService
    dispatcher: EventDispatcher
    scheduler: SleepScheduler
    orchestrator: WorkflowOrchestrator
    worker: WorkflowWorker


def load_services(path: str) -> Any:
    """Import ``module:attribute``; call it when it is a factory."""
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ConfigurationError(f"Expected 'module:attribute', got '{path}'")
    target = getattr(importlib.import_module(module_name), attribute)
    return target() if callable(target) else target


def create_runtime(
    config: Optional[ForgeflowConfig] = None,
    services: Any = None,
    repository: Optional[WorkflowRepository] = None,
    transport: Optional[BaseTransport] = None,
    registry: WorkflowRegistry = REGISTRY,
    clock: Callable[[], datetime] = utcnow,
) -> ForgeflowRuntime:
    """Build a runtime from ``config`` (loaded from YAML/env when omitted)."""
    config = config or load_config()
    engine = config.engine
    repository = repository or get_repository(config=config)
    transport = transport or get_transport(config=config)
    if services is None:
        services = WorkflowServices(nft_policy_id=config.nft_policy_id)

    tokens = TokenService.from_config(config)
    retry_policy = RetryPolicy(
        max_attempts=engine.max_attempts,
        backoff_base=engine.backoff_base,
        backoff_cap=engine.backoff_cap,
        jitter=engine.backoff_jitter,
    )
    dispatcher = EventDispatcher(repository, transport, tokens, registry=registry)
    scheduler = SleepScheduler(
        repository,
        dispatcher,
        clock=clock,
        batch_size=engine.timer_batch_size,
        stale_after=engine.stale_after,
    )
    executor = StepExecutor(
        repository, retry_policy, default_timeout=engine.step_timeout, clock=clock
    )
    orchestrator = WorkflowOrchestrator(
        repository,
        registry=registry,
        deps=services,
        retry_policy=retry_policy,
        executor=executor,
        scheduler=scheduler,
        clock=clock,
        stale_after=engine.stale_after,
    )
    worker = WorkflowWorker(
        transport,
        orchestrator,
        scheduler=scheduler,
        concurrency=engine.workers,
        poll_interval=engine.poll_interval,
        topic=dispatcher.topic,
    )
    return ForgeflowRuntime(
        config=config,
        repository=repository,
        transport=transport,
        tokens=tokens,
        dispatcher=dispatcher,
        scheduler=scheduler,
        orchestrator=orchestrator,
        worker=worker,
    )

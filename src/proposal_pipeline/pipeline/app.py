"""Wiring of stores, runtime, functions and the stall schedule."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from proposal_pipeline.config import Settings
from proposal_pipeline.generation import CliContentGenerator, ContentGenerator
from proposal_pipeline.pipeline.context import ContextCache
from proposal_pipeline.pipeline.coordinator import ProposalCoordinator
from proposal_pipeline.pipeline.phases import PhaseCollaborators
from proposal_pipeline.pipeline.repository import JobRepository
from proposal_pipeline.pipeline.service import PipelineService
from proposal_pipeline.pipeline.stall_monitor import register_stall_monitor
from proposal_pipeline.pipeline.unit_review import UnitReviewMachine
from proposal_pipeline.runtime import DurableRuntime, RuntimeRepository
from proposal_pipeline.storage.common import utc_now


@dataclass(slots=True)
class PipelineApp:
    """Everything one worker process needs, built from one ``Settings``."""

    settings: Settings
    jobs: JobRepository
    runtime_store: RuntimeRepository
    runtime: DurableRuntime
    cache: ContextCache
    service: PipelineService

    def init_schema(self) -> None:
        self.jobs.init_schema()

    def close(self) -> None:
        self.jobs.close()
        self.runtime_store.close()


def build_generator(settings: Settings) -> CliContentGenerator:
    return CliContentGenerator(
        command_template=settings.generation.command_template,
        workdir=settings.generation.workdir,
        timeout_seconds=settings.generation.timeout_seconds,
        transient_exit_codes=settings.generation.transient_exit_codes,
    )


def build_pipeline(
    settings: Settings,
    *,
    generator: ContentGenerator | None = None,
    clock: Callable[[], datetime] = utc_now,
    sleep: Callable[[float], None] = time.sleep,
) -> PipelineApp:
    """Build the worker with every pipeline function registered."""

    jobs = JobRepository(settings.db_path, clock=clock)
    runtime_store = RuntimeRepository(settings.db_path, clock=clock)
    runtime = DurableRuntime(
        runtime_store,
        clock=clock,
        sleep=sleep,
        step_retries=settings.runtime.step_retries,
        retry_base_seconds=settings.runtime.retry_base_seconds,
        retry_max_seconds=settings.runtime.retry_max_seconds,
        max_workers=settings.runtime.max_workers,
        stale_run_seconds=settings.runtime.stale_run_seconds,
        poll_interval_seconds=settings.runtime.poll_interval_seconds,
    )
    generator = generator or build_generator(settings)
    cache = ContextCache(jobs)

    ProposalCoordinator(repository=jobs, cache=cache, settings=settings.pipeline).register(
        runtime,
    )
    PhaseCollaborators(
        repository=jobs,
        generator=generator,
        cache=cache,
        settings=settings.pipeline,
    ).register(runtime)
    UnitReviewMachine(
        repository=jobs,
        generator=generator,
        cache=cache,
        settings=settings.pipeline,
    ).register(runtime)
    register_stall_monitor(runtime, jobs, settings.stall_monitor)

    return PipelineApp(
        settings=settings,
        jobs=jobs,
        runtime_store=runtime_store,
        runtime=runtime,
        cache=cache,
        service=PipelineService(repository=jobs, runtime=runtime, settings=settings.pipeline),
    )

"""Runtime configuration for the proposal pipeline."""

from __future__ import annotations

import os
import shlex
import sys
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

from croniter import croniter

from proposal_pipeline.pipeline.models import BlockedUnitPolicy, UnitSpec

DEFAULT_UNITS: tuple[str, ...] = ("Technical", "Management", "Past Performance", "Pricing")


def default_command_template() -> str:
    """Command template running the bundled echo agent with this interpreter."""

    return (
        f"{shlex.quote(sys.executable)} -m proposal_pipeline.generation.echo_agent "
        "--mode {mode} --prompt-file {prompt_file}"
    )


@dataclass(slots=True)
class RuntimeSettings:
    """Durable step runtime settings."""

    step_retries: int = 2
    retry_base_seconds: float = 1.0
    retry_max_seconds: float = 30.0
    max_workers: int = 4
    poll_interval_seconds: float = 2.0
    stale_run_seconds: int = 1_800


@dataclass(slots=True)
class PipelineSettings:
    """Coordinator and unit review settings."""

    units: tuple[str, ...] = DEFAULT_UNITS
    max_iterations: int = 5
    preparation_timeout_seconds: int = 1_800
    assembly_timeout_seconds: int = 900
    scoring_timeout_seconds: int = 600
    decision_timeout_seconds: int = 604_800
    convergence_poll_seconds: int = 10
    convergence_ceiling_seconds: int = 259_200
    max_job_duration_seconds: int = 345_600
    unit_concurrency: int = 4
    blocked_unit_policy: BlockedUnitPolicy = BlockedUnitPolicy.DEGRADE
    consult_score_threshold: float = 80.0

    def unit_specs(self) -> list[UnitSpec]:
        return [UnitSpec(name=name) for name in self.units]

    @property
    def preparation_timeout(self) -> timedelta:
        return timedelta(seconds=self.preparation_timeout_seconds)

    @property
    def assembly_timeout(self) -> timedelta:
        return timedelta(seconds=self.assembly_timeout_seconds)

    @property
    def scoring_timeout(self) -> timedelta:
        return timedelta(seconds=self.scoring_timeout_seconds)

    @property
    def decision_timeout(self) -> timedelta:
        return timedelta(seconds=self.decision_timeout_seconds)

    @property
    def convergence_poll(self) -> timedelta:
        return timedelta(seconds=self.convergence_poll_seconds)

    @property
    def convergence_ceiling(self) -> timedelta:
        return timedelta(seconds=self.convergence_ceiling_seconds)

    @property
    def max_job_duration(self) -> timedelta:
        return timedelta(seconds=self.max_job_duration_seconds)


@dataclass(slots=True)
class StallMonitorSettings:
    """Out-of-band stall sweep settings."""

    cron: str = "*/5 * * * *"
    stale_after_seconds: int = 3_600

    @property
    def stale_after(self) -> timedelta:
        return timedelta(seconds=self.stale_after_seconds)


@dataclass(slots=True)
class GenerationSettings:
    """CLI generation collaborator settings."""

    command_template: str = field(default_factory=default_command_template)
    timeout_seconds: int = 600
    workdir: Path = Path(".proposal_pipeline_work")
    transient_exit_codes: tuple[int, ...] = (137, 143)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".proposal_pipeline.db")
    runtime: RuntimeSettings = field(default_factory=RuntimeSettings)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    stall_monitor: StallMonitorSettings = field(default_factory=StallMonitorSettings)
    generation: GenerationSettings = field(default_factory=GenerationSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path
            or Path(os.getenv("PROPOSAL_PIPELINE_DB_PATH", ".proposal_pipeline.db")),
            runtime=RuntimeSettings(
                step_retries=int(os.getenv("PROPOSAL_PIPELINE_STEP_RETRIES", "2")),
                retry_base_seconds=float(
                    os.getenv("PROPOSAL_PIPELINE_RETRY_BASE_SECONDS", "1.0"),
                ),
                retry_max_seconds=float(
                    os.getenv("PROPOSAL_PIPELINE_RETRY_MAX_SECONDS", "30.0"),
                ),
                max_workers=int(os.getenv("PROPOSAL_PIPELINE_MAX_WORKERS", "4")),
                poll_interval_seconds=float(
                    os.getenv("PROPOSAL_PIPELINE_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                stale_run_seconds=int(os.getenv("PROPOSAL_PIPELINE_STALE_RUN_SECONDS", "1800")),
            ),
            pipeline=PipelineSettings(
                units=_env_csv("PROPOSAL_PIPELINE_UNITS", DEFAULT_UNITS),
                max_iterations=int(os.getenv("PROPOSAL_PIPELINE_MAX_ITERATIONS", "5")),
                preparation_timeout_seconds=int(
                    os.getenv("PROPOSAL_PIPELINE_PREPARATION_TIMEOUT_SECONDS", "1800"),
                ),
                assembly_timeout_seconds=int(
                    os.getenv("PROPOSAL_PIPELINE_ASSEMBLY_TIMEOUT_SECONDS", "900"),
                ),
                scoring_timeout_seconds=int(
                    os.getenv("PROPOSAL_PIPELINE_SCORING_TIMEOUT_SECONDS", "600"),
                ),
                decision_timeout_seconds=int(
                    os.getenv("PROPOSAL_PIPELINE_DECISION_TIMEOUT_SECONDS", "604800"),
                ),
                convergence_poll_seconds=int(
                    os.getenv("PROPOSAL_PIPELINE_CONVERGENCE_POLL_SECONDS", "10"),
                ),
                convergence_ceiling_seconds=int(
                    os.getenv("PROPOSAL_PIPELINE_CONVERGENCE_CEILING_SECONDS", "259200"),
                ),
                max_job_duration_seconds=int(
                    os.getenv("PROPOSAL_PIPELINE_MAX_JOB_DURATION_SECONDS", "345600"),
                ),
                unit_concurrency=int(os.getenv("PROPOSAL_PIPELINE_UNIT_CONCURRENCY", "4")),
                blocked_unit_policy=_env_policy(
                    "PROPOSAL_PIPELINE_BLOCKED_UNIT_POLICY",
                    BlockedUnitPolicy.DEGRADE,
                ),
                consult_score_threshold=float(
                    os.getenv("PROPOSAL_PIPELINE_CONSULT_SCORE_THRESHOLD", "80"),
                ),
            ),
            stall_monitor=StallMonitorSettings(
                cron=os.getenv("PROPOSAL_PIPELINE_STALL_CRON", "*/5 * * * *"),
                stale_after_seconds=int(
                    os.getenv("PROPOSAL_PIPELINE_STALL_AFTER_SECONDS", "3600"),
                ),
            ),
            generation=GenerationSettings(
                command_template=os.getenv(
                    "PROPOSAL_PIPELINE_COMMAND_TEMPLATE",
                    default_command_template(),
                ),
                timeout_seconds=int(
                    os.getenv("PROPOSAL_PIPELINE_GENERATION_TIMEOUT_SECONDS", "600"),
                ),
                workdir=Path(
                    os.getenv("PROPOSAL_PIPELINE_WORKDIR", ".proposal_pipeline_work"),
                ),
                transient_exit_codes=_env_int_tuple(
                    "PROPOSAL_PIPELINE_TRANSIENT_EXIT_CODES",
                    (137, 143),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        if self.runtime.step_retries < 0:
            raise ValueError("PROPOSAL_PIPELINE_STEP_RETRIES must be >= 0.")
        if self.runtime.max_workers < 1:
            raise ValueError("PROPOSAL_PIPELINE_MAX_WORKERS must be >= 1.")
        if self.runtime.retry_base_seconds < 0 or self.runtime.retry_max_seconds < 0:
            raise ValueError("PROPOSAL_PIPELINE_RETRY_*_SECONDS must be >= 0.")
        if not self.pipeline.units:
            raise ValueError("PROPOSAL_PIPELINE_UNITS must name at least one unit.")
        if self.pipeline.max_iterations < 1:
            raise ValueError("PROPOSAL_PIPELINE_MAX_ITERATIONS must be >= 1.")
        if self.pipeline.unit_concurrency < 1:
            raise ValueError("PROPOSAL_PIPELINE_UNIT_CONCURRENCY must be >= 1.")
        if self.pipeline.convergence_poll_seconds <= 0:
            raise ValueError("PROPOSAL_PIPELINE_CONVERGENCE_POLL_SECONDS must be > 0.")
        pipeline = self.pipeline
        for name, value in (
            (
                "PROPOSAL_PIPELINE_PREPARATION_TIMEOUT_SECONDS",
                pipeline.preparation_timeout_seconds,
            ),
            (
                "PROPOSAL_PIPELINE_CONVERGENCE_CEILING_SECONDS",
                pipeline.convergence_ceiling_seconds,
            ),
            ("PROPOSAL_PIPELINE_ASSEMBLY_TIMEOUT_SECONDS", pipeline.assembly_timeout_seconds),
            ("PROPOSAL_PIPELINE_SCORING_TIMEOUT_SECONDS", pipeline.scoring_timeout_seconds),
            ("PROPOSAL_PIPELINE_DECISION_TIMEOUT_SECONDS", pipeline.decision_timeout_seconds),
            ("PROPOSAL_PIPELINE_MAX_JOB_DURATION_SECONDS", pipeline.max_job_duration_seconds),
        ):
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")
        if not 0 <= self.pipeline.consult_score_threshold <= 100:  # noqa: PLR2004
            raise ValueError("PROPOSAL_PIPELINE_CONSULT_SCORE_THRESHOLD must be within 0..100.")
        if self.stall_monitor.stale_after_seconds <= 0:
            raise ValueError("PROPOSAL_PIPELINE_STALL_AFTER_SECONDS must be > 0.")
        if not croniter.is_valid(self.stall_monitor.cron):
            raise ValueError(
                f"Invalid PROPOSAL_PIPELINE_STALL_CRON: {self.stall_monitor.cron!r}",
            )
        if self.generation.timeout_seconds <= 0:
            raise ValueError("PROPOSAL_PIPELINE_GENERATION_TIMEOUT_SECONDS must be > 0.")
        if not self.generation.command_template.strip():
            raise ValueError("PROPOSAL_PIPELINE_COMMAND_TEMPLATE must not be empty.")


def _env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _env_int_tuple(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return tuple(int(part.strip()) for part in raw.split(",") if part.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer list for {name}: {raw!r}") from error


def _env_policy(name: str, default: BlockedUnitPolicy) -> BlockedUnitPolicy:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return BlockedUnitPolicy(value.strip().lower())
    except ValueError as error:
        allowed = ", ".join(item.value for item in BlockedUnitPolicy)
        raise ValueError(f"Invalid value for {name}: {value!r} (expected {allowed})") from error

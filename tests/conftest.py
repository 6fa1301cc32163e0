"""Shared test fixtures."""

from __future__ import annotations

import os
import re
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

import proposal_pipeline
from proposal_pipeline.config import PipelineSettings, RuntimeSettings, Settings
from proposal_pipeline.generation import GenerationError, GenerationRequest, ScoreResult
from proposal_pipeline.pipeline import events
from proposal_pipeline.pipeline.app import build_pipeline
from proposal_pipeline.pipeline.prompts import DOCUMENT_CRITERIA
from proposal_pipeline.runtime import DurableRuntime, RuntimeRepository

_UNIT_MARKER = re.compile(r"unit=(\d+)\]")


class ManualClock:
    """Deterministic UTC clock advanced by hand."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 10, 17, 9, 0, 30, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class SimulatedCrash(BaseException):  # noqa: N818
    """Stands in for the worker process dying mid-step."""


class ScriptedGenerator:
    """In-memory content generator with scripted scores and failures.

    Generated text carries a ``[mode unit=N]`` marker so that ``score`` can
    tell which unit it is scoring. Unit scores are consumed in order; the
    last one repeats.
    """

    def __init__(
        self,
        *,
        unit_scores: dict[int, list[float]] | None = None,
        document_score: float = 88.0,
    ) -> None:
        self.unit_scores = {key: list(value) for key, value in (unit_scores or {}).items()}
        self.document_score = document_score
        self.calls: list[tuple[str, int | None]] = []
        self.failures: dict[tuple[str, int | None], list[BaseException]] = {}

    def fail_next(self, mode: str, error: BaseException, *, unit_id: int | None = None) -> None:
        self.failures.setdefault((mode, unit_id), []).append(error)

    def count(self, mode: str, unit_id: int | None = None) -> int:
        return sum(1 for call in self.calls if call == (mode, unit_id))

    def generate(self, request: GenerationRequest) -> str:
        self.calls.append((request.mode.value, request.unit_id))
        self._raise_scripted(request.mode.value, request.unit_id)
        first_line = request.prompt.strip().splitlines()[0]
        return f"[{request.mode.value} unit={request.unit_id}] {first_line}"

    def score(self, *, job_id: str, content: str, criteria: str) -> ScoreResult:
        if criteria == DOCUMENT_CRITERIA:
            self.calls.append(("score-document", None))
            self._raise_scripted("score-document", None)
            return ScoreResult(score=self.document_score, strengths=["coherent"])
        marker = _UNIT_MARKER.search(content)
        unit_id = int(marker.group(1)) if marker else None
        self.calls.append(("score", unit_id))
        self._raise_scripted("score", unit_id)
        scores = self.unit_scores.get(unit_id or 0) or [90.0]
        value = scores.pop(0) if len(scores) > 1 else scores[0]
        gaps = [] if value >= 80 else ["needs metrics"]  # noqa: PLR2004
        return ScoreResult(score=value, strengths=["clear"], gaps=gaps)

    def _raise_scripted(self, mode: str, unit_id: int | None) -> None:
        pending = self.failures.get((mode, unit_id))
        if pending:
            raise pending.pop(0)


def transient_error(message: str = "connection reset by peer") -> GenerationError:
    return GenerationError(message, transient=True)


def fatal_error(message: str = "model not found") -> GenerationError:
    return GenerationError(message, transient=False)


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def generator() -> ScriptedGenerator:
    return ScriptedGenerator()


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def store(tmp_path, clock):
    repository = RuntimeRepository(tmp_path / "runtime.db", clock=clock)
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def runtime(store, clock, sleeps) -> DurableRuntime:
    return DurableRuntime(store, clock=clock, sleep=sleeps.append, max_workers=1)


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        db_path=tmp_path / "pipeline.db",
        runtime=RuntimeSettings(max_workers=1, step_retries=2),
        pipeline=PipelineSettings(units=("Technical", "Management")),
    )


@pytest.fixture()
def make_app(settings, generator, clock, sleeps):
    """Factory building a fully wired pipeline on the shared database."""

    built = []

    def _make(*, pipeline: PipelineSettings | None = None, gen=None):
        effective = replace(settings, pipeline=pipeline) if pipeline is not None else settings
        app = build_pipeline(
            effective,
            generator=gen or generator,
            clock=clock,
            sleep=sleeps.append,
        )
        app.init_schema()
        built.append(app)
        return app

    yield _make
    for app in built:
        app.close()


@pytest.fixture()
def app(make_app):
    return make_app()


def settle(app, clock: ManualClock | None = None, **advance: float) -> None:
    """Optionally advance the clock, then run the runtime until nothing changes."""

    if clock is not None and advance:
        clock.advance(**advance)
    app.runtime.run_until_idle()


def approve(app, job_id: str, unit_id: int, *, iteration: int = 1, score: float = 90.0) -> str:
    return app.service.submit_decision(
        {
            "job_id": job_id,
            "unit_id": unit_id,
            "iteration": iteration,
            "decision": "approved",
            "final_score": score,
        },
    )


def iterate(app, job_id: str, unit_id: int, *, iteration: int, feedback: str) -> str:
    return app.service.submit_decision(
        {
            "job_id": job_id,
            "unit_id": unit_id,
            "iteration": iteration,
            "decision": "iterate",
            "feedback": feedback,
        },
    )


def event_names(app, job_id: str) -> list[str]:
    return [event.name for event in app.runtime_store.list_events(job_id=job_id)]


def coordinator_runs(app, job_id: str):
    return app.runtime_store.list_runs(function_id=events.COORDINATOR_FUNCTION, job_id=job_id)


def converge(app, clock: ManualClock) -> None:
    """Settle pending work, then let the coordinator's convergence poll tick once."""

    settle(app)
    settle(app, clock, seconds=11)


@pytest.fixture()
def echo_agent_env(monkeypatch):
    """Make the bundled echo agent importable from agent subprocesses."""

    src_dir = Path(proposal_pipeline.__file__).resolve().parents[1]
    existing = os.environ.get("PYTHONPATH")
    monkeypatch.setenv(
        "PYTHONPATH",
        f"{src_dir}{os.pathsep}{existing}" if existing else str(src_dir),
    )

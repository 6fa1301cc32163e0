"""Subprocess-based content generator for CLI agents."""

from __future__ import annotations

import json
import logging
import os
import shlex
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO
from uuid import uuid4

from proposal_pipeline.generation.base import (
    GenerationError,
    GenerationMode,
    GenerationRequest,
    ScoreResult,
)
from proposal_pipeline.generation.failure_classifier import classify_generation_failure

logger = logging.getLogger(__name__)

_TIMEOUT_EXIT_CODE = 124
# Agents run in their own session so a timeout can stop the tools they spawned too.
_PROCESS_GROUPS = os.name == "posix"


@dataclass(slots=True)
class CliRunResult:
    """Execution outcome of one agent invocation."""

    exit_code: int
    timed_out: bool
    stdout: str
    stderr: str


class CliContentGenerator:
    """Run a command template per generation call and read its stdout.

    The template may use ``{prompt}``, ``{prompt_file}`` and ``{mode}``; at
    least one of the prompt placeholders is required.
    """

    def __init__(
        self,
        *,
        command_template: str,
        workdir: Path,
        timeout_seconds: int = 600,
        transient_exit_codes: tuple[int, ...] = (137, 143),
    ) -> None:
        self.command_template = command_template
        self.workdir = workdir
        self.timeout_seconds = timeout_seconds
        self.transient_exit_codes = transient_exit_codes

    def generate(self, request: GenerationRequest) -> str:
        result = self._invoke(
            mode=request.mode,
            prompt=request.prompt,
            job_id=request.job_id,
            unit_id=request.unit_id,
        )
        text = result.stdout.strip()
        if not text:
            raise GenerationError(
                f"Agent returned empty output for {request.mode.value}.",
                transient=True,
            )
        return text

    def score(self, *, job_id: str, content: str, criteria: str) -> ScoreResult:
        prompt = (
            f"{criteria}\n\n"
            "Return one JSON object with keys score (0-100), strengths, gaps and "
            "requirement_scores.\n\n"
            f"--- CONTENT ---\n{content}\n"
        )
        result = self._invoke(mode=GenerationMode.SCORE, prompt=prompt, job_id=job_id)
        return ScoreResult.from_payload(_extract_json_object(result.stdout))

    def _invoke(
        self,
        *,
        mode: GenerationMode,
        prompt: str,
        job_id: str,
        unit_id: int | None = None,
    ) -> CliRunResult:
        call_dir = self.workdir / job_id
        call_dir.mkdir(parents=True, exist_ok=True)
        call_id = uuid4().hex[:12]
        prompt_file = call_dir / f"{mode.value}-{call_id}.prompt.txt"
        prompt_file.write_text(prompt, "utf-8")
        stdout_path = call_dir / f"{mode.value}-{call_id}.stdout.txt"
        stderr_path = call_dir / f"{mode.value}-{call_id}.stderr.txt"

        run_args = build_run_args(
            command_template=self.command_template,
            prompt=prompt,
            prompt_file=prompt_file,
            mode=mode.value,
        )
        env = os.environ.copy()
        env["PROPOSAL_PIPELINE_MODE"] = mode.value
        env["PROPOSAL_PIPELINE_JOB_ID"] = job_id
        if unit_id is not None:
            env["PROPOSAL_PIPELINE_UNIT_ID"] = str(unit_id)

        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                exit_code, timed_out = _run_subprocess(
                    run_args=run_args,
                    env=env,
                    timeout_seconds=self.timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                )
        except FileNotFoundError as error:
            raise GenerationError(
                f"Agent command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise GenerationError(f"Agent failed to start: {error}", transient=True) from error

        result = CliRunResult(
            exit_code=exit_code,
            timed_out=timed_out,
            stdout=stdout_path.read_text("utf-8", errors="replace"),
            stderr=stderr_path.read_text("utf-8", errors="replace"),
        )
        if result.exit_code != 0 or result.timed_out:
            classification = classify_generation_failure(
                exit_code=result.exit_code,
                timed_out=result.timed_out,
                stdout=result.stdout,
                stderr=result.stderr,
                transient_exit_codes=self.transient_exit_codes,
            )
            logger.warning(
                "Agent %s call for job %s exited with %d: %s",
                mode.value,
                job_id,
                result.exit_code,
                classification.describe(),
            )
            raise GenerationError(
                f"Agent {mode.value} call failed with exit code {result.exit_code} "
                f"[{classification.failure_class.value}]",
                transient=classification.transient,
            )
        return result


def build_run_args(
    *,
    command_template: str,
    prompt: str,
    prompt_file: Path,
    mode: str,
) -> list[str]:
    """Render the command template into an argv list."""

    stripped = command_template.strip()
    if not stripped:
        raise GenerationError("Agent command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise GenerationError(
            "Agent command template must include {prompt} or {prompt_file}.",
            transient=False,
        )
    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            mode=shlex.quote(mode),
        )
    except KeyError as error:
        raise GenerationError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise GenerationError("Agent command template rendered empty command.", transient=False)
    return argv


def _extract_json_object(stdout: str) -> dict[str, object]:
    start = stdout.find("{")
    end = stdout.rfind("}")
    if start < 0 or end <= start:
        raise GenerationError("Score output contains no JSON object.", transient=False)
    try:
        payload = json.loads(stdout[start : end + 1])
    except json.JSONDecodeError as error:
        raise GenerationError(
            f"Score output is not valid JSON: {error}",
            transient=False,
        ) from error
    if not isinstance(payload, dict):
        raise GenerationError("Score output must be a JSON object.", transient=False)
    return payload


def _run_subprocess(
    *,
    run_args: list[str],
    env: dict[str, str],
    timeout_seconds: int,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
) -> tuple[int, bool]:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
        start_new_session=_PROCESS_GROUPS,
    )
    start_monotonic = time.monotonic()
    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode, False
        if time.monotonic() - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            return _TIMEOUT_EXIT_CODE, True
        time.sleep(0.1)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        _signal_process(process, force=False)
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        pass
    # Group members that outlived the leader, or a leader ignoring SIGTERM.
    try:
        _signal_process(process, force=True)
    except OSError:
        return
    process.wait(timeout=2)


def _signal_process(process: subprocess.Popen[str], *, force: bool) -> None:
    if _PROCESS_GROUPS:
        os.killpg(process.pid, signal.SIGKILL if force else signal.SIGTERM)
    elif force:
        process.kill()
    else:
        process.terminate()

"""Per-job working context shared by unit generators."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from proposal_pipeline.pipeline.repository import JobRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class JobContext:
    """Loaded job input plus the preparation summary."""

    job_id: str
    input: dict[str, Any]
    preparation: dict[str, Any] = field(default_factory=dict)

    def summary(self) -> str:
        title = self.input.get("title") or self.input.get("solicitation") or self.job_id
        analysis = self.preparation.get("analysis", "")
        return f"Proposal: {title}\n\n{analysis}".strip()


class ContextCache:
    """Thread-safe cache of job contexts, rebuilt from the job record on miss.

    Entries are working memory only; losing them (restart, release) costs one
    re-read of the job row.
    """

    def __init__(self, repository: JobRepository) -> None:
        self.repository = repository
        self._entries: dict[str, JobContext] = {}
        self._lock = threading.Lock()

    def get(self, job_id: str) -> JobContext:
        with self._lock:
            cached = self._entries.get(job_id)
        if cached is not None:
            return cached
        job = self.repository.require_job(job_id)
        context = JobContext(job_id=job_id, input=job.input, preparation=job.preparation or {})
        with self._lock:
            self._entries[job_id] = context
        return context

    def store(self, context: JobContext) -> None:
        with self._lock:
            self._entries[context.job_id] = context

    def release(self, job_id: str) -> bool:
        with self._lock:
            released = self._entries.pop(job_id, None) is not None
        if released:
            logger.debug("Released context cache for job %s", job_id)
        return released

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

"""Persistent store for runtime events, runs, memoized steps and waits."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from proposal_pipeline.runtime.models import (
    RunStatus,
    RunView,
    RuntimeEventView,
    StepRecord,
    StepStatus,
    WaitKind,
    WaitStatus,
    WaitView,
)
from proposal_pipeline.storage.alembic_runner import upgrade_head
from proposal_pipeline.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json_object,
    optional_aware,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from proposal_pipeline.storage.sqlmodel_models import (
    RuntimeEvent,
    RuntimeRun,
    RuntimeStep,
    RuntimeWait,
)


class RuntimeRepository:
    """Runtime persistence facade backed by SQLModel + SQLite."""

    def __init__(
        self,
        db_path: Path,
        *,
        clock: Callable[[], datetime] = utc_now,
        busy_timeout_ms: int = 5000,
    ) -> None:
        self.db_path = db_path
        self.clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- events ---------------------------------------------------------------

    def add_event(self, *, name: str, payload: dict[str, Any]) -> RuntimeEventView:
        """Persist one event for later dispatch."""

        now = self.clock()
        job_id = payload.get("job_id")
        row = RuntimeEvent(
            event_id=str(uuid4()),
            name=name,
            job_id=str(job_id) if job_id is not None else None,
            payload_json=dump_json(payload),
            created_at=to_db_datetime(now),
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_event_view(row)

    def get_event(self, event_id: str) -> RuntimeEventView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(RuntimeEvent).where(RuntimeEvent.event_id == event_id),
            ).one_or_none()
        return _to_event_view(row) if row is not None else None

    def pending_events(self, *, limit: int = 100) -> list[RuntimeEventView]:
        """Undispatched events in arrival order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(RuntimeEvent)
                .where(col(RuntimeEvent.dispatched_at).is_(None))
                .order_by(col(RuntimeEvent.seq).asc())
                .limit(limit),
            ).all()
        return [_to_event_view(row) for row in rows]

    def mark_event_dispatched(self, event_id: str) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(RuntimeEvent)
                .where(col(RuntimeEvent.event_id) == event_id)
                .values(dispatched_at=to_db_datetime(self.clock())),
            )
            session.commit()

    def list_events(
        self,
        *,
        name: str | None = None,
        job_id: str | None = None,
    ) -> list[RuntimeEventView]:
        with Session(self.engine) as session:
            statement = select(RuntimeEvent).order_by(col(RuntimeEvent.seq).asc())
            if name is not None:
                statement = statement.where(RuntimeEvent.name == name)
            if job_id is not None:
                statement = statement.where(RuntimeEvent.job_id == job_id)
            rows = session.exec(statement).all()
        return [_to_event_view(row) for row in rows]

    def latest_event_seq(self) -> int:
        with Session(self.engine) as session:
            latest = session.exec(select(func.max(RuntimeEvent.seq))).one()
        return int(latest or 0)

    def events_since(
        self,
        *,
        name: str,
        after_seq: int,
        job_id: str | None,
        run_id: str,
    ) -> list[RuntimeEventView]:
        """Events named ``name`` after ``after_seq`` that no wait of ``run_id`` consumed yet."""

        consumed = select(RuntimeWait.matched_event_id).where(
            RuntimeWait.run_id == run_id,
            col(RuntimeWait.matched_event_id).is_not(None),
        )
        with Session(self.engine) as session:
            statement = (
                select(RuntimeEvent)
                .where(
                    RuntimeEvent.name == name,
                    col(RuntimeEvent.seq) > after_seq,
                    col(RuntimeEvent.event_id).not_in(consumed),
                )
                .order_by(col(RuntimeEvent.seq).asc())
            )
            if job_id is not None:
                statement = statement.where(RuntimeEvent.job_id == job_id)
            rows = session.exec(statement).all()
        return [_to_event_view(row) for row in rows]

    # -- runs -----------------------------------------------------------------

    def create_run(
        self,
        *,
        function_id: str,
        event: RuntimeEventView,
        deadline_at: datetime | None,
    ) -> RunView:
        """Queue a new run of a function for the triggering event."""

        now = self.clock()
        row = RuntimeRun(
            run_id=str(uuid4()),
            function_id=function_id,
            job_id=event.job_id,
            event_id=event.event_id,
            status=RunStatus.QUEUED.value,
            deadline_at=to_db_datetime(deadline_at) if deadline_at is not None else None,
            created_at=to_db_datetime(now),
            updated_at=to_db_datetime(now),
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_run_view(row)

    def get_run(self, run_id: str) -> RunView | None:
        with Session(self.engine) as session:
            row = session.get(RuntimeRun, run_id)
        return _to_run_view(row) if row is not None else None

    def list_runs(
        self,
        *,
        function_id: str | None = None,
        job_id: str | None = None,
        status: RunStatus | None = None,
        limit: int | None = None,
    ) -> list[RunView]:
        """List runs in creation order with optional filters."""

        with Session(self.engine) as session:
            statement = select(RuntimeRun).order_by(col(RuntimeRun.created_at).asc())
            if function_id is not None:
                statement = statement.where(RuntimeRun.function_id == function_id)
            if job_id is not None:
                statement = statement.where(RuntimeRun.job_id == job_id)
            if status is not None:
                statement = statement.where(RuntimeRun.status == status.value)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_run_view(row) for row in rows]

    def count_running(self, function_id: str) -> int:
        with Session(self.engine) as session:
            return session.exec(
                select(func.count())
                .select_from(RuntimeRun)
                .where(
                    RuntimeRun.function_id == function_id,
                    RuntimeRun.status == RunStatus.RUNNING.value,
                ),
            ).one()

    def claim_run(self, run_id: str) -> RunView | None:
        """Atomically move a queued run to running."""

        now = to_db_datetime(self.clock())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(RuntimeRun)
                .where(
                    col(RuntimeRun.run_id) == run_id,
                    col(RuntimeRun.status) == RunStatus.QUEUED.value,
                )
                .values(
                    status=RunStatus.RUNNING.value,
                    executions=RuntimeRun.executions + 1,
                    heartbeat_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            row = session.get(RuntimeRun, run_id)
            return _to_run_view(row) if row is not None else None

    def touch_run(self, run_id: str) -> None:
        """Update heartbeat for a running run."""

        now = to_db_datetime(self.clock())
        with Session(self.engine) as session:
            session.exec(
                sa_update(RuntimeRun)
                .where(
                    col(RuntimeRun.run_id) == run_id,
                    col(RuntimeRun.status) == RunStatus.RUNNING.value,
                )
                .values(heartbeat_at=now, updated_at=now),
            )
            session.commit()

    def suspend_run(self, run_id: str) -> bool:
        return self._transition_run(run_id, RunStatus.RUNNING, RunStatus.WAITING)

    def wake_run(self, run_id: str) -> bool:
        return self._transition_run(run_id, RunStatus.WAITING, RunStatus.QUEUED)

    def finish_run(
        self,
        run_id: str,
        *,
        status: RunStatus,
        result: Any = None,
        error: str | None = None,
    ) -> bool:
        """Move a running run to a terminal state."""

        return self._transition_run(
            run_id,
            RunStatus.RUNNING,
            status,
            result_json=dump_json(result) if result is not None else None,
            error=error,
        )

    def is_cancel_requested(self, run_id: str) -> bool:
        with Session(self.engine) as session:
            row = session.get(RuntimeRun, run_id)
        return bool(row is not None and row.cancel_requested)

    def cancel_runs(self, *, function_id: str, job_id: str) -> tuple[list[RunView], list[RunView]]:
        """Cancel parked runs of a job and flag running ones.

        Returns ``(cancelled, flagged)``: queued/waiting runs are cancelled
        immediately, running runs observe the flag at their next step boundary.
        """

        now = to_db_datetime(self.clock())
        cancelled: list[RunView] = []
        flagged: list[RunView] = []
        with Session(self.engine) as session:
            rows = session.exec(
                select(RuntimeRun).where(
                    RuntimeRun.function_id == function_id,
                    RuntimeRun.job_id == job_id,
                    col(RuntimeRun.status).in_(
                        [
                            RunStatus.QUEUED.value,
                            RunStatus.WAITING.value,
                            RunStatus.RUNNING.value,
                        ],
                    ),
                ),
            ).all()
            for row in rows:
                if row.status == RunStatus.RUNNING.value:
                    row.cancel_requested = True
                    row.updated_at = now
                    session.add(row)
                    flagged.append(_to_run_view(row))
                    continue
                row.status = RunStatus.CANCELLED.value
                row.cancel_requested = True
                row.updated_at = now
                session.add(row)
                session.exec(
                    sa_update(RuntimeWait)
                    .where(
                        col(RuntimeWait.run_id) == row.run_id,
                        col(RuntimeWait.status) == WaitStatus.PENDING.value,
                    )
                    .values(status=WaitStatus.CANCELLED.value),
                )
                cancelled.append(_to_run_view(row))
            session.commit()
        return cancelled, flagged

    def cancel_waits(self, run_id: str) -> int:
        """Close every pending wait of a run that reached a terminal state."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(RuntimeWait)
                .where(
                    col(RuntimeWait.run_id) == run_id,
                    col(RuntimeWait.status) == WaitStatus.PENDING.value,
                )
                .values(status=WaitStatus.CANCELLED.value),
            )
            session.commit()
            return result.rowcount

    def recover_stale_running_runs(self, *, stale_after: timedelta) -> int:
        """Requeue runs left running by a dead process."""

        now = self.clock()
        threshold = to_db_datetime(now - stale_after)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(RuntimeRun)
                .where(
                    col(RuntimeRun.status) == RunStatus.RUNNING.value,
                    col(RuntimeRun.heartbeat_at) < threshold,
                )
                .values(status=RunStatus.QUEUED.value, updated_at=to_db_datetime(now)),
            )
            session.commit()
            return result.rowcount

    def wake_runs_past_deadline(self) -> int:
        """Requeue parked runs whose overall deadline elapsed."""

        now = to_db_datetime(self.clock())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(RuntimeRun)
                .where(
                    col(RuntimeRun.status) == RunStatus.WAITING.value,
                    col(RuntimeRun.deadline_at).is_not(None),
                    col(RuntimeRun.deadline_at) <= now,
                )
                .values(status=RunStatus.QUEUED.value, updated_at=now),
            )
            session.commit()
            return result.rowcount

    def wake_orphaned_runs(self) -> int:
        """Requeue waiting runs that no longer have a pending wait."""

        now = to_db_datetime(self.clock())
        pending = select(RuntimeWait.run_id).where(
            RuntimeWait.status == WaitStatus.PENDING.value,
        )
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(RuntimeRun)
                .where(
                    col(RuntimeRun.status) == RunStatus.WAITING.value,
                    col(RuntimeRun.run_id).not_in(pending),
                )
                .values(status=RunStatus.QUEUED.value, updated_at=now),
            )
            session.commit()
            return result.rowcount

    # -- steps ----------------------------------------------------------------

    def load_steps(self, run_id: str) -> dict[str, StepRecord]:
        with Session(self.engine) as session:
            rows = session.exec(select(RuntimeStep).where(RuntimeStep.run_id == run_id)).all()
        return {row.step_name: _to_step_record(row) for row in rows}

    def save_step(self, *, run_id: str, record: StepRecord) -> None:
        """Insert or overwrite the memoized outcome of one step."""

        now = to_db_datetime(self.clock())
        with Session(self.engine) as session:
            self._upsert_step(session=session, run_id=run_id, record=record, now=now)
            session.commit()

    # -- waits ----------------------------------------------------------------

    def arm_wait(  # noqa: PLR0913
        self,
        *,
        run_id: str,
        step_name: str,
        kind: WaitKind,
        expires_at: datetime,
        event_name: str | None = None,
        match: dict[str, Any] | None = None,
    ) -> WaitView:
        """Create (or re-arm) the wait record a run parks on."""

        match = match or {}
        job_id = match.get("job_id")
        now = to_db_datetime(self.clock())
        with Session(self.engine) as session:
            row = session.exec(
                select(RuntimeWait).where(
                    RuntimeWait.run_id == run_id,
                    RuntimeWait.step_name == step_name,
                ),
            ).one_or_none()
            if row is not None and row.status == WaitStatus.PENDING.value:
                return _to_wait_view(row)
            if row is None:
                row = RuntimeWait(
                    run_id=run_id,
                    step_name=step_name,
                    kind=kind.value,
                    expires_at=to_db_datetime(expires_at),
                    status=WaitStatus.PENDING.value,
                    created_at=now,
                )
            row.kind = kind.value
            row.event_name = event_name
            row.job_id = str(job_id) if job_id is not None else None
            row.match_json = dump_json(match)
            row.expires_at = to_db_datetime(expires_at)
            row.status = WaitStatus.PENDING.value
            row.matched_event_id = None
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_wait_view(row)

    def pending_event_waits(self, *, event_name: str, job_id: str | None) -> list[WaitView]:
        with Session(self.engine) as session:
            statement = select(RuntimeWait).where(
                RuntimeWait.status == WaitStatus.PENDING.value,
                RuntimeWait.kind == WaitKind.EVENT.value,
                RuntimeWait.event_name == event_name,
            )
            if job_id is not None:
                statement = statement.where(
                    (col(RuntimeWait.job_id) == job_id) | (col(RuntimeWait.job_id).is_(None)),
                )
            rows = session.exec(statement.order_by(col(RuntimeWait.id).asc())).all()
        return [_to_wait_view(row) for row in rows]

    def expired_waits(self) -> list[WaitView]:
        now = to_db_datetime(self.clock())
        with Session(self.engine) as session:
            rows = session.exec(
                select(RuntimeWait)
                .where(
                    RuntimeWait.status == WaitStatus.PENDING.value,
                    RuntimeWait.expires_at <= now,
                )
                .order_by(col(RuntimeWait.id).asc()),
            ).all()
        return [_to_wait_view(row) for row in rows]

    def list_waits(self, *, run_id: str) -> list[WaitView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(RuntimeWait)
                .where(RuntimeWait.run_id == run_id)
                .order_by(col(RuntimeWait.id).asc()),
            ).all()
        return [_to_wait_view(row) for row in rows]

    def resolve_wait(
        self,
        *,
        wait: WaitView,
        status: WaitStatus,
        event: RuntimeEventView | None = None,
    ) -> bool:
        """Close a pending wait, memoize its outcome and wake the run.

        Event waits memoize the matched payload (or ``None`` on expiry); sleep
        waits memoize ``None``; poll ticks only wake the run.
        """

        now = to_db_datetime(self.clock())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(RuntimeWait)
                .where(
                    col(RuntimeWait.id) == wait.wait_id,
                    col(RuntimeWait.status) == WaitStatus.PENDING.value,
                )
                .values(
                    status=status.value,
                    matched_event_id=event.event_id if event is not None else None,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            if wait.kind != WaitKind.POLL:
                self._upsert_step(
                    session=session,
                    run_id=wait.run_id,
                    record=StepRecord(
                        step_name=wait.step_name,
                        status=StepStatus.COMPLETED,
                        value=event.payload if event is not None else None,
                    ),
                    now=now,
                )
            session.exec(
                sa_update(RuntimeRun)
                .where(
                    col(RuntimeRun.run_id) == wait.run_id,
                    col(RuntimeRun.status) == RunStatus.WAITING.value,
                )
                .values(status=RunStatus.QUEUED.value, updated_at=now),
            )
            session.commit()
            return True

    # -- internals ------------------------------------------------------------

    def _transition_run(
        self,
        run_id: str,
        status_from: RunStatus,
        status_to: RunStatus,
        **values: object,
    ) -> bool:
        now = to_db_datetime(self.clock())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(RuntimeRun)
                .where(
                    col(RuntimeRun.run_id) == run_id,
                    col(RuntimeRun.status) == status_from.value,
                )
                .values(status=status_to.value, updated_at=now, **values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def _upsert_step(
        self,
        *,
        session: Session,
        run_id: str,
        record: StepRecord,
        now: datetime,
    ) -> None:
        row = session.exec(
            select(RuntimeStep).where(
                RuntimeStep.run_id == run_id,
                RuntimeStep.step_name == record.step_name,
            ),
        ).one_or_none()
        if row is None:
            row = RuntimeStep(
                run_id=run_id,
                step_name=record.step_name,
                status=record.status.value,
                created_at=now,
                updated_at=now,
            )
        row.status = record.status.value
        row.attempts = record.attempts
        row.result_json = json.dumps({"value": record.value}, ensure_ascii=False)
        row.error = record.error
        row.updated_at = now
        session.add(row)


def _to_event_view(row: RuntimeEvent) -> RuntimeEventView:
    return RuntimeEventView(
        event_id=row.event_id,
        name=row.name,
        job_id=row.job_id,
        payload=load_json_object(row.payload_json),
        created_at=to_utc_aware_datetime(row.created_at),
        dispatched_at=optional_aware(row.dispatched_at),
        seq=row.seq or 0,
    )


def _to_run_view(row: RuntimeRun) -> RunView:
    return RunView(
        run_id=row.run_id,
        function_id=row.function_id,
        job_id=row.job_id,
        event_id=row.event_id,
        status=RunStatus(row.status),
        cancel_requested=row.cancel_requested,
        executions=row.executions,
        deadline_at=optional_aware(row.deadline_at),
        heartbeat_at=optional_aware(row.heartbeat_at),
        result=json.loads(row.result_json) if row.result_json else None,
        error=row.error,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_step_record(row: RuntimeStep) -> StepRecord:
    stored = json.loads(row.result_json) if row.result_json else {}
    return StepRecord(
        step_name=row.step_name,
        status=StepStatus(row.status),
        value=stored.get("value"),
        attempts=row.attempts,
        error=row.error,
    )


def _to_wait_view(row: RuntimeWait) -> WaitView:
    return WaitView(
        wait_id=row.id or 0,
        run_id=row.run_id,
        step_name=row.step_name,
        kind=WaitKind(row.kind),
        event_name=row.event_name,
        job_id=row.job_id,
        expires_at=to_utc_aware_datetime(row.expires_at),
        status=WaitStatus(row.status),
        match=load_json_object(row.match_json),
    )

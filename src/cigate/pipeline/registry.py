"""Pipeline registry — SQLite persistence for runs, stage results, checks, reviews, artifacts.

Key exports:
    PipelineRegistry — CRUD for workflow_runs, stage_results, status_checks,
        pull_requests, reviews, artifacts and seen_deliveries.

A run is history once it completes or fails: stage results can no longer be
added to or changed on it.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

import aiosqlite

from cigate.errors import RunFinalizedError
from cigate.models import EventKind
from cigate.pipeline.models import (
    Artifact,
    CheckState,
    PullRequestState,
    Review,
    ReviewState,
    RunStatus,
    StageOutcome,
    StageResult,
    StatusCheck,
    StepResult,
    WorkflowRun,
)

logger = logging.getLogger("cigate.pipeline.registry")


class PipelineRegistry:
    """SQLite-backed persistence for the pipeline.

    Takes an already-open aiosqlite connection. Call `initialize()` to create
    tables.
    """

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def initialize(self) -> None:
        """Create all pipeline tables if they don't exist."""
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA_SQL)
        await self._db.commit()
        logger.info("Pipeline registry tables initialized")

    # ── Workflow Runs ────────────────────────────────────────────────────────

    async def create_run(self, run: WorkflowRun) -> None:
        """Insert a new workflow run (its stage list is stored separately)."""
        await self._db.execute(
            """
            INSERT INTO workflow_runs (
                run_id, event_kind, branch, commit_sha, pr_number, sender,
                delivery_id, status, error_message, created_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run.run_id,
                run.event_kind.value,
                run.branch,
                run.commit_sha,
                run.pr_number,
                run.sender,
                run.delivery_id,
                run.status.value,
                run.error_message,
                _dt_to_str(run.created_at),
                _dt_to_str(run.completed_at),
            ),
        )
        await self._db.commit()

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Fetch a run with its stage results in execution order."""
        cursor = await self._db.execute("SELECT * FROM workflow_runs WHERE run_id = ?", (run_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        run = _row_to_run(row)
        run.stages = await self.get_stage_results(run_id)
        return run

    async def list_runs(
        self,
        *,
        branch: str | None = None,
        commit_sha: str | None = None,
        pr_number: int | None = None,
        status: RunStatus | None = None,
        limit: int = 50,
    ) -> list[WorkflowRun]:
        """List runs, newest first. Stage results are not loaded."""
        conditions: list[str] = []
        params: list = []
        for column, value in (
            ("branch", branch),
            ("commit_sha", commit_sha),
            ("pr_number", pr_number),
            ("status", status.value if status else None),
        ):
            if value is not None:
                conditions.append(f"{column} = ?")
                params.append(value)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(limit)
        cursor = await self._db.execute(
            f"SELECT * FROM workflow_runs {where} ORDER BY created_at DESC LIMIT ?",
            params,
        )
        rows = await cursor.fetchall()
        return [_row_to_run(r) for r in rows]

    async def get_active_runs(self) -> list[WorkflowRun]:
        """Runs with status pending or running."""
        cursor = await self._db.execute(
            "SELECT * FROM workflow_runs WHERE status IN (?, ?) ORDER BY created_at",
            (RunStatus.PENDING.value, RunStatus.RUNNING.value),
        )
        rows = await cursor.fetchall()
        return [_row_to_run(r) for r in rows]

    async def update_run(self, run: WorkflowRun) -> None:
        """Update a run's mutable fields.

        Raises:
            RunFinalizedError: If the stored run has already completed or failed.
        """
        await self._ensure_not_final(run.run_id)
        await self._db.execute(
            """
            UPDATE workflow_runs SET
                status = ?, error_message = ?, completed_at = ?
            WHERE run_id = ?
            """,
            (
                run.status.value,
                run.error_message,
                _dt_to_str(run.completed_at),
                run.run_id,
            ),
        )
        await self._db.commit()

    # ── Stage Results ────────────────────────────────────────────────────────

    async def add_stage_result(self, result: StageResult) -> int:
        """Insert a stage result. Returns the auto-incremented ID."""
        await self._ensure_not_final(result.run_id)
        cursor = await self._db.execute(
            """
            INSERT INTO stage_results (
                run_id, stage_name, outcome, log_ref, steps,
                error_message, started_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                result.run_id,
                result.stage_name,
                result.outcome.value,
                result.log_ref,
                _steps_to_json(result.steps),
                result.error_message,
                _dt_to_str(result.started_at),
                _dt_to_str(result.completed_at),
            ),
        )
        await self._db.commit()
        return cursor.lastrowid  # type: ignore[return-value]

    async def update_stage_result(self, result: StageResult) -> None:
        await self._ensure_not_final(result.run_id)
        await self._db.execute(
            """
            UPDATE stage_results SET
                outcome = ?, log_ref = ?, steps = ?, error_message = ?,
                started_at = ?, completed_at = ?
            WHERE id = ?
            """,
            (
                result.outcome.value,
                result.log_ref,
                _steps_to_json(result.steps),
                result.error_message,
                _dt_to_str(result.started_at),
                _dt_to_str(result.completed_at),
                result.id,
            ),
        )
        await self._db.commit()

    async def get_stage_results(self, run_id: str) -> list[StageResult]:
        cursor = await self._db.execute(
            "SELECT * FROM stage_results WHERE run_id = ? ORDER BY id",
            (run_id,),
        )
        rows = await cursor.fetchall()
        return [_row_to_stage_result(r) for r in rows]

    async def _ensure_not_final(self, run_id: str) -> None:
        cursor = await self._db.execute(
            "SELECT status FROM workflow_runs WHERE run_id = ?", (run_id,)
        )
        row = await cursor.fetchone()
        if row and RunStatus(row["status"]) in (RunStatus.COMPLETED, RunStatus.FAILED):
            raise RunFinalizedError(run_id)

    # ── Status Checks ────────────────────────────────────────────────────────

    async def set_status_check(self, check: StatusCheck) -> None:
        """Record the latest state of a named check on a commit."""
        await self._db.execute(
            """
            INSERT INTO status_checks (commit_sha, name, state, run_id, description, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(commit_sha, name) DO UPDATE SET
                state = excluded.state,
                run_id = excluded.run_id,
                description = excluded.description,
                updated_at = excluded.updated_at
            """,
            (
                check.commit_sha,
                check.name,
                check.state.value,
                check.run_id,
                check.description,
                _dt_to_str(check.updated_at),
            ),
        )
        await self._db.commit()

    async def get_status_checks(self, commit_sha: str) -> list[StatusCheck]:
        cursor = await self._db.execute(
            "SELECT * FROM status_checks WHERE commit_sha = ? ORDER BY name",
            (commit_sha,),
        )
        rows = await cursor.fetchall()
        return [
            StatusCheck(
                commit_sha=r["commit_sha"],
                name=r["name"],
                state=CheckState(r["state"]),
                run_id=r["run_id"],
                description=r["description"] or "",
                updated_at=_str_to_dt(r["updated_at"]) or datetime.now(timezone.utc),
            )
            for r in rows
        ]

    # ── Pull Requests & Reviews ──────────────────────────────────────────────

    async def upsert_pull_request(self, pr: PullRequestState) -> None:
        await self._db.execute(
            """
            INSERT INTO pull_requests (number, base_branch, head_branch, head_sha, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(number) DO UPDATE SET
                base_branch = excluded.base_branch,
                head_branch = excluded.head_branch,
                head_sha = excluded.head_sha,
                updated_at = excluded.updated_at
            """,
            (
                pr.number,
                pr.base_branch,
                pr.head_branch,
                pr.head_sha,
                _dt_to_str(pr.updated_at),
            ),
        )
        await self._db.commit()

    async def get_pull_request(self, number: int) -> PullRequestState | None:
        cursor = await self._db.execute("SELECT * FROM pull_requests WHERE number = ?", (number,))
        row = await cursor.fetchone()
        if not row:
            return None
        return PullRequestState(
            number=row["number"],
            base_branch=row["base_branch"],
            head_branch=row["head_branch"],
            head_sha=row["head_sha"],
            updated_at=_str_to_dt(row["updated_at"]) or datetime.now(timezone.utc),
        )

    async def record_review(self, review: Review) -> None:
        """Store a reviewer's latest review, replacing their previous one.

        A ``commented`` review never replaces an earlier review by the same
        reviewer; it is stored only when the reviewer has none yet.
        """
        await self._db.execute(
            """
            INSERT INTO reviews (pr_number, reviewer, state, commit_sha, submitted_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(pr_number, reviewer) DO UPDATE SET
                state = excluded.state,
                commit_sha = excluded.commit_sha,
                submitted_at = excluded.submitted_at
            WHERE excluded.state != 'commented'
            """,
            (
                review.pr_number,
                review.reviewer,
                review.state.value,
                review.commit_sha,
                _dt_to_str(review.submitted_at),
            ),
        )
        await self._db.commit()

    async def get_reviews(self, pr_number: int) -> list[Review]:
        cursor = await self._db.execute(
            "SELECT * FROM reviews WHERE pr_number = ? ORDER BY submitted_at",
            (pr_number,),
        )
        rows = await cursor.fetchall()
        return [
            Review(
                pr_number=r["pr_number"],
                reviewer=r["reviewer"],
                state=ReviewState(r["state"]),
                commit_sha=r["commit_sha"],
                submitted_at=_str_to_dt(r["submitted_at"]) or datetime.now(timezone.utc),
            )
            for r in rows
        ]

    async def dismiss_stale_reviews(self, pr_number: int, head_sha: str) -> int:
        """Dismiss approvals given on any commit other than *head_sha*.

        Returns the number of approvals dismissed.
        """
        cursor = await self._db.execute(
            """
            UPDATE reviews SET state = ?
            WHERE pr_number = ? AND state = ? AND commit_sha != ?
            """,
            (ReviewState.DISMISSED.value, pr_number, ReviewState.APPROVED.value, head_sha),
        )
        await self._db.commit()
        return cursor.rowcount

    # ── Artifacts ────────────────────────────────────────────────────────────

    async def create_artifact(self, artifact: Artifact) -> int:
        cursor = await self._db.execute(
            """
            INSERT INTO artifacts (run_id, name, path, size_bytes, retention_days, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                artifact.run_id,
                artifact.name,
                artifact.path,
                artifact.size_bytes,
                artifact.retention_days,
                _dt_to_str(artifact.created_at),
            ),
        )
        await self._db.commit()
        return cursor.lastrowid  # type: ignore[return-value]

    async def get_artifacts_for_run(
        self, run_id: str, *, include_expired: bool = False
    ) -> list[Artifact]:
        cursor = await self._db.execute(
            "SELECT * FROM artifacts WHERE run_id = ? ORDER BY id", (run_id,)
        )
        rows = await cursor.fetchall()
        artifacts = [_row_to_artifact(r) for r in rows]
        if include_expired:
            return artifacts
        return [a for a in artifacts if not a.is_expired()]

    async def get_expired_artifacts(self, now: datetime | None = None) -> list[Artifact]:
        cursor = await self._db.execute("SELECT * FROM artifacts ORDER BY id")
        rows = await cursor.fetchall()
        return [a for a in (_row_to_artifact(r) for r in rows) if a.is_expired(now)]

    async def delete_artifact(self, artifact_id: int) -> None:
        await self._db.execute("DELETE FROM artifacts WHERE id = ?", (artifact_id,))
        await self._db.commit()

    # ── Webhook Deduplication ────────────────────────────────────────────────

    async def has_seen_delivery(self, delivery_id: str) -> bool:
        cursor = await self._db.execute(
            "SELECT 1 FROM seen_deliveries WHERE delivery_id = ?", (delivery_id,)
        )
        return await cursor.fetchone() is not None

    async def mark_delivery_seen(self, delivery_id: str, event_type: str) -> None:
        await self._db.execute(
            "INSERT OR IGNORE INTO seen_deliveries (delivery_id, event_type, received_at) "
            "VALUES (?, ?, ?)",
            (delivery_id, event_type, _dt_to_str(datetime.now(timezone.utc))),
        )
        await self._db.commit()


# ── Schema ──────────────────────────────────────────────────────────────────

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS workflow_runs (
    run_id TEXT PRIMARY KEY,
    event_kind TEXT NOT NULL,
    branch TEXT NOT NULL,
    commit_sha TEXT NOT NULL,
    pr_number INTEGER,
    sender TEXT,
    delivery_id TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    error_message TEXT,
    created_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_workflow_runs_branch
    ON workflow_runs(branch, created_at);
CREATE INDEX IF NOT EXISTS idx_workflow_runs_pr
    ON workflow_runs(pr_number);
CREATE INDEX IF NOT EXISTS idx_workflow_runs_status
    ON workflow_runs(status);

CREATE TABLE IF NOT EXISTS stage_results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES workflow_runs(run_id) ON DELETE CASCADE,
    stage_name TEXT NOT NULL,
    outcome TEXT NOT NULL DEFAULT 'pending',
    log_ref TEXT,
    steps TEXT NOT NULL DEFAULT '[]',
    error_message TEXT,
    started_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_stage_results_run
    ON stage_results(run_id);

CREATE TABLE IF NOT EXISTS status_checks (
    commit_sha TEXT NOT NULL,
    name TEXT NOT NULL,
    state TEXT NOT NULL,
    run_id TEXT,
    description TEXT DEFAULT '',
    updated_at TEXT NOT NULL,
    PRIMARY KEY(commit_sha, name)
);

CREATE TABLE IF NOT EXISTS pull_requests (
    number INTEGER PRIMARY KEY,
    base_branch TEXT NOT NULL,
    head_branch TEXT,
    head_sha TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS reviews (
    pr_number INTEGER NOT NULL,
    reviewer TEXT NOT NULL,
    state TEXT NOT NULL,
    commit_sha TEXT NOT NULL,
    submitted_at TEXT NOT NULL,
    PRIMARY KEY(pr_number, reviewer)
);

CREATE TABLE IF NOT EXISTS artifacts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES workflow_runs(run_id),
    name TEXT NOT NULL,
    path TEXT NOT NULL,
    size_bytes INTEGER DEFAULT 0,
    retention_days INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE(run_id, name)
);

CREATE TABLE IF NOT EXISTS seen_deliveries (
    delivery_id TEXT PRIMARY KEY,
    event_type TEXT NOT NULL,
    received_at TEXT NOT NULL
);
"""


# ── Row-to-Model Converters ─────────────────────────────────────────────────


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to ISO string for SQLite storage."""
    if dt is None:
        return None
    return dt.isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    """Parse ISO string from SQLite back to datetime."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except (ValueError, TypeError):
        return None


def _steps_to_json(steps: list[StepResult]) -> str:
    return json.dumps([s.model_dump() for s in steps])


def _row_to_run(row: aiosqlite.Row) -> WorkflowRun:
    return WorkflowRun(
        run_id=row["run_id"],
        event_kind=EventKind(row["event_kind"]),
        branch=row["branch"],
        commit_sha=row["commit_sha"],
        pr_number=row["pr_number"],
        sender=row["sender"],
        delivery_id=row["delivery_id"],
        status=RunStatus(row["status"]),
        error_message=row["error_message"],
        created_at=_str_to_dt(row["created_at"]) or datetime.now(timezone.utc),
        completed_at=_str_to_dt(row["completed_at"]),
    )


def _row_to_stage_result(row: aiosqlite.Row) -> StageResult:
    steps = row["steps"]
    if isinstance(steps, str):
        steps = json.loads(steps)
    return StageResult(
        id=row["id"],
        run_id=row["run_id"],
        stage_name=row["stage_name"],
        outcome=StageOutcome(row["outcome"]),
        log_ref=row["log_ref"],
        steps=[StepResult(**s) for s in steps],
        error_message=row["error_message"],
        started_at=_str_to_dt(row["started_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
    )


def _row_to_artifact(row: aiosqlite.Row) -> Artifact:
    return Artifact(
        id=row["id"],
        run_id=row["run_id"],
        name=row["name"],
        path=row["path"],
        size_bytes=row["size_bytes"] or 0,
        retention_days=row["retention_days"],
        created_at=_str_to_dt(row["created_at"]) or datetime.now(timezone.utc),
    )

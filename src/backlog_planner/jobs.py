"""Command run, job, and token usage telemetry for planner commands."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col

from backlog_planner.storage.common import to_db_datetime, utc_now
from backlog_planner.storage.sqlmodel_models import CommandRun, Job, TokenUsage

logger = logging.getLogger(__name__)


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class TokenUsageRecord:
    """Token estimate for one prompt-bearing action."""

    command_name: str
    action: str
    tokens_prompt: int
    tokens_completion: int = 0
    command_run_id: str | None = None
    job_id: str | None = None
    project_id: str | None = None
    agent_id: str | None = None
    model_name: str | None = None
    metadata: dict[str, Any] | None = None

    @property
    def tokens_total(self) -> int:
        return self.tokens_prompt + self.tokens_completion


class JobService:
    """Persist command runs, jobs, and token usage to the workspace database."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def start_command_run(self, command_name: str, *, project_key: str | None = None) -> str:
        run_id = str(uuid4())
        with Session(self.engine) as session:
            session.add(
                CommandRun(
                    id=run_id,
                    command_name=command_name,
                    project_key=project_key,
                    status=RunStatus.RUNNING.value,
                    started_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()
        logger.debug("Started command run %s (%s)", run_id, command_name)
        return run_id

    def start_job(  # noqa: PLR0913
        self,
        *,
        job_type: str,
        command_name: str,
        command_run_id: str | None,
        project_key: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> str:
        job_id = str(uuid4())
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            session.add(
                Job(
                    id=job_id,
                    command_run_id=command_run_id,
                    job_type=job_type,
                    command_name=command_name,
                    project_key=project_key,
                    status=RunStatus.RUNNING.value,
                    payload_json=_dump(payload),
                    created_at=now,
                    updated_at=now,
                ),
            )
            session.commit()
        return job_id

    def update_job_status(
        self,
        job_id: str,
        status: str,
        *,
        processed_items: int | None = None,
        payload: dict[str, Any] | None = None,
        error_summary: str | None = None,
    ) -> None:
        values: dict[str, Any] = {"status": status, "updated_at": to_db_datetime(utc_now())}
        if processed_items is not None:
            values["processed_items"] = processed_items
        if payload is not None:
            values["payload_json"] = _dump(payload)
        if error_summary is not None:
            values["error_summary"] = error_summary
        with Session(self.engine) as session:
            session.exec(sa_update(Job).where(col(Job.id) == job_id).values(**values))
            session.commit()

    def finish_command_run(
        self,
        run_id: str,
        status: str,
        *,
        error_summary: str | None = None,
        processed_items: int | None = None,
    ) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(CommandRun)
                .where(col(CommandRun.id) == run_id)
                .values(
                    status=status,
                    error_summary=error_summary,
                    processed_items=processed_items,
                    finished_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()
        logger.debug("Finished command run %s with status=%s", run_id, status)

    def record_token_usage(self, record: TokenUsageRecord) -> None:
        with Session(self.engine) as session:
            session.add(
                TokenUsage(
                    command_run_id=record.command_run_id,
                    job_id=record.job_id,
                    project_id=record.project_id,
                    command_name=record.command_name,
                    action=record.action,
                    agent_id=record.agent_id,
                    model_name=record.model_name,
                    tokens_prompt=record.tokens_prompt,
                    tokens_completion=record.tokens_completion,
                    tokens_total=record.tokens_total,
                    metadata_json=_dump(record.metadata),
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()


def _dump(value: dict[str, Any] | None) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, default=str)

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from ..model import Status

status_type = sa.Enum(
    Status,
    name="workflow_status",
    native_enum=False,
    values_callable=lambda e: [s.value for s in e],
)


class UTCDateTime(sa.TypeDecorator):
    """DateTime that always reads back timezone-aware UTC (SQLite drops the offset)."""

    impl = sa.DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    pass


class WorkflowRun(Base):
    __tablename__ = "workflow_runs"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    repo_name: Mapped[str] = mapped_column(sa.Text, nullable=False, index=True)
    workflow_name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    branch: Mapped[str] = mapped_column(sa.Text, nullable=False)
    commit_sha: Mapped[str] = mapped_column(sa.Text, nullable=False)
    commit_message: Mapped[str] = mapped_column(sa.Text, nullable=False)
    triggered_by: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[Status] = mapped_column(status_type, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True))

    jobs: Mapped[List["WorkflowJob"]] = relationship(
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="WorkflowJob.position",
        passive_deletes=True,
    )


class WorkflowJob(Base):
    __tablename__ = "workflow_jobs"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("workflow_runs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    runs_on: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[Status] = mapped_column(status_type, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True))

    run: Mapped[WorkflowRun] = relationship(back_populates="jobs")
    steps: Mapped[List["WorkflowStep"]] = relationship(
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="WorkflowStep.position",
        passive_deletes=True,
    )


class WorkflowStep(Base):
    __tablename__ = "workflow_steps"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("workflow_jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    command: Mapped[Optional[str]] = mapped_column(sa.Text)
    uses: Mapped[Optional[str]] = mapped_column(sa.Text)
    status: Mapped[Status] = mapped_column(status_type, nullable=False)
    output: Mapped[Optional[str]] = mapped_column(sa.Text)
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True))

    job: Mapped[WorkflowJob] = relationship(back_populates="steps")

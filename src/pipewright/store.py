# store.py
# Run, job and deployment records in a SQL database (SQLite by default).
from __future__ import annotations

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .model import RunInstance, utcnow

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class RunRecord(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.String(32), primary_key=True)
    workflow: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    event_json: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    outputs_json: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    cancel_requested: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=utcnow)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)


class JobRecord(Base):
    __tablename__ = "jobs"
    run_id: Mapped[str] = mapped_column(sa.String(32), sa.ForeignKey("runs.id", ondelete="CASCADE"), primary_key=True)
    name: Mapped[str] = mapped_column(sa.Text, primary_key=True)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    error_kind: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    skip_reason: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    skipped_by_failure: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    outputs_json: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    artifacts_json: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)


class DeploymentRecord(Base):
    __tablename__ = "deployments"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    environment: Mapped[str] = mapped_column(sa.Text, nullable=False, index=True)
    run_id: Mapped[Optional[str]] = mapped_column(sa.String(32), nullable=True)
    digest: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    url: Mapped[str] = mapped_column(sa.Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=utcnow)


def _deployment_dict(row: DeploymentRecord) -> Dict[str, Any]:
    return {
        "environment": row.environment,
        "run_id": row.run_id,
        "digest": row.digest,
        "url": row.url,
        "created_at": row.created_at.isoformat(),
    }


class RunStore:
    """
    Synchronous SQLAlchemy store shared by the scheduler, the publisher, the
    CLI and the HTTP control plane.
    """

    def __init__(self, url: str = "sqlite://"):
        kwargs: Dict[str, Any] = {}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                # one shared connection, or every session sees its own empty database
                kwargs["poolclass"] = StaticPool
            else:
                path = url.split("///", 1)[-1]
                Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.url = url
        self.engine = sa.create_engine(url, **kwargs)
        self.Session = sessionmaker(self.engine, expire_on_commit=False)
        self._lock = threading.Lock()
        Base.metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    # -------------------- Runs --------------------

    def save_run(self, run: RunInstance) -> None:
        report = run.to_dict()
        with self._lock, self.Session.begin() as s:
            rec = s.get(RunRecord, run.id)
            if rec is None:
                rec = RunRecord(id=run.id, created_at=run.created_at, cancel_requested=run.cancel_requested)
                s.add(rec)
            elif run.cancel_requested:
                rec.cancel_requested = True
            rec.workflow = report["workflow"]
            rec.status = report["status"]
            rec.event_json = report["event"]
            rec.outputs_json = report["outputs"]
            rec.finished_at = run.finished_at

            for job in report["jobs"]:
                jrec = s.get(JobRecord, (run.id, job["name"]))
                if jrec is None:
                    jrec = JobRecord(run_id=run.id, name=job["name"])
                    s.add(jrec)
                jrec.status = job["status"]
                jrec.error_kind = job["error_kind"]
                jrec.error_message = job["error_message"]
                jrec.skip_reason = job["skip_reason"]
                jrec.skipped_by_failure = job["skipped_by_failure"]
                prefix = f"{job['name']}."
                jrec.outputs_json = {k: v for k, v in report["outputs"].items() if k.startswith(prefix)}
                jrec.artifacts_json = job["artifacts"]

    def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        """Run report in the shape of RunInstance.to_dict(), or None."""
        with self._lock, self.Session() as s:
            rec = s.get(RunRecord, run_id)
            if rec is None:
                return None
            jobs = s.scalars(sa.select(JobRecord).where(JobRecord.run_id == run_id)).all()
            return {
                "id": rec.id,
                "workflow": rec.workflow,
                "status": rec.status,
                "event": rec.event_json,
                "jobs": [
                    {
                        "name": j.name,
                        "status": j.status,
                        "error_kind": j.error_kind,
                        "error_message": j.error_message,
                        "skip_reason": j.skip_reason,
                        "skipped_by_failure": j.skipped_by_failure,
                        "artifacts": j.artifacts_json,
                    }
                    for j in jobs
                ],
                "outputs": rec.outputs_json,
                "cancel_requested": rec.cancel_requested,
                "created_at": rec.created_at.isoformat(),
                "finished_at": rec.finished_at.isoformat() if rec.finished_at else None,
            }

    def request_cancel(self, run_id: str) -> bool:
        """Flag a run for cancellation. Returns False for unknown runs."""
        with self._lock, self.Session.begin() as s:
            rec = s.get(RunRecord, run_id)
            if rec is None:
                return False
            rec.cancel_requested = True
            return True

    def cancel_requested(self, run_id: str) -> bool:
        with self._lock, self.Session() as s:
            flag = s.scalar(sa.select(RunRecord.cancel_requested).where(RunRecord.id == run_id))
            return bool(flag)

    # -------------------- Deployments --------------------

    def record_deployment(self, environment: str, *, run_id: Optional[str], digest: str, url: str) -> None:
        with self._lock, self.Session.begin() as s:
            s.add(DeploymentRecord(environment=environment, run_id=run_id, digest=digest, url=url))
        logger.debug("recorded deployment of %s to %s", digest[:12], environment)

    def current_deployment(self, environment: str) -> Optional[Dict[str, Any]]:
        with self._lock, self.Session() as s:
            row = s.scalars(
                sa.select(DeploymentRecord)
                .where(DeploymentRecord.environment == environment)
                .order_by(DeploymentRecord.id.desc())
                .limit(1)
            ).first()
            return _deployment_dict(row) if row else None

    def deployment_for(self, environment: str, run_id: str) -> Optional[Dict[str, Any]]:
        with self._lock, self.Session() as s:
            row = s.scalars(
                sa.select(DeploymentRecord)
                .where(DeploymentRecord.environment == environment, DeploymentRecord.run_id == run_id)
                .order_by(DeploymentRecord.id.desc())
                .limit(1)
            ).first()
            return _deployment_dict(row) if row else None

    def deployments(self, environment: str) -> List[Dict[str, Any]]:
        """Every deployment of `environment`, oldest first."""
        with self._lock, self.Session() as s:
            rows = s.scalars(
                sa.select(DeploymentRecord)
                .where(DeploymentRecord.environment == environment)
                .order_by(DeploymentRecord.id)
            ).all()
            return [_deployment_dict(r) for r in rows]

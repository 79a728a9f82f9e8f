# archive.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool


class Base(DeclarativeBase):
    pass


class RunRecord(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    pipeline: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    trigger: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    event_json: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    artifacts_fingerprint: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)


class InstanceRecord(Base):
    __tablename__ = "job_instances"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(sa.String(64), sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False, index=True)
    instance_id: Mapped[str] = mapped_column(sa.Text, nullable=False)
    job: Mapped[str] = mapped_column(sa.Text, nullable=False)
    matrix: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    detail: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    exit_code: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    timed_out: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    started_at: Mapped[Optional[str]] = mapped_column(sa.String(40), nullable=True)
    finished_at: Mapped[Optional[str]] = mapped_column(sa.String(40), nullable=True)


class ArtifactRecord(Base):
    __tablename__ = "artifacts"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(sa.String(64), sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    producer: Mapped[str] = mapped_column(sa.Text, nullable=False)
    sha256: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    size: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)


def _make_engine(url: str) -> sa.Engine:
    if url.startswith("sqlite"):
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return sa.create_engine(url, **kwargs)
    return sa.create_engine(url, pool_pre_ping=True)


class RunArchive:
    """
    SQL archive for finished runs: the retention target once a run is
    garbage-collected from the coordinator's memory.
    """

    def __init__(self, url: str):
        self.engine = _make_engine(url)
        self.Session = sessionmaker(self.engine, expire_on_commit=False)
        Base.metadata.create_all(self.engine)

    def save(self, run: Dict[str, Any]) -> None:
        """Archive a finished run (as produced by Run.to_dict()). Re-saving replaces it."""
        with self.Session() as s:
            with s.begin():
                s.execute(sa.delete(InstanceRecord).where(InstanceRecord.run_id == run["id"]))
                s.execute(sa.delete(ArtifactRecord).where(ArtifactRecord.run_id == run["id"]))
                s.merge(
                    RunRecord(
                        id=run["id"],
                        pipeline=run["pipeline"],
                        status=run["status"],
                        trigger=run.get("trigger"),
                        event_json=run["event"],
                        artifacts_fingerprint=run.get("artifacts_fingerprint"),
                        created_at=datetime.fromisoformat(run["created_at"]),
                        completed_at=datetime.fromisoformat(run["completed_at"]) if run.get("completed_at") else None,
                    )
                )
                s.flush()
                for inst in run["instances"]:
                    s.add(
                        InstanceRecord(
                            run_id=run["id"],
                            instance_id=inst["id"],
                            job=inst["job"],
                            matrix=inst["matrix"],
                            status=inst["status"],
                            detail=inst.get("detail"),
                            exit_code=inst.get("exit_code"),
                            timed_out=bool(inst.get("timed_out")),
                            started_at=inst.get("started_at"),
                            finished_at=inst.get("finished_at"),
                        )
                    )
                for a in run.get("artifacts", []):
                    s.add(
                        ArtifactRecord(
                            run_id=run["id"],
                            name=a["name"],
                            producer=a["producer"],
                            sha256=a["sha256"],
                            size=a["size"],
                            created_at=datetime.fromisoformat(a["created_at"]),
                        )
                    )

    def get(self, run_id: str) -> Optional[Dict[str, Any]]:
        with self.Session() as s:
            rec = s.get(RunRecord, run_id)
            if rec is None:
                return None
            instances = s.scalars(
                sa.select(InstanceRecord).where(InstanceRecord.run_id == run_id).order_by(InstanceRecord.id)
            ).all()
            artifacts = s.scalars(
                sa.select(ArtifactRecord).where(ArtifactRecord.run_id == run_id).order_by(ArtifactRecord.id)
            ).all()
            out = self._run_summary(rec)
            out["instances"] = [
                {
                    "id": i.instance_id,
                    "job": i.job,
                    "matrix": i.matrix,
                    "status": i.status,
                    "detail": i.detail,
                    "exit_code": i.exit_code,
                    "timed_out": i.timed_out,
                    "started_at": i.started_at,
                    "finished_at": i.finished_at,
                }
                for i in instances
            ]
            out["artifacts"] = [
                {"name": a.name, "producer": a.producer, "sha256": a.sha256, "size": a.size}
                for a in artifacts
            ]
            return out

    def list(self, limit: int = 100) -> List[Dict[str, Any]]:
        with self.Session() as s:
            recs = s.scalars(sa.select(RunRecord).order_by(RunRecord.created_at.desc()).limit(limit)).all()
            return [self._run_summary(r) for r in recs]

    @staticmethod
    def _run_summary(rec: RunRecord) -> Dict[str, Any]:
        return {
            "id": rec.id,
            "pipeline": rec.pipeline,
            "status": rec.status,
            "trigger": rec.trigger,
            "event": rec.event_json,
            "artifacts_fingerprint": rec.artifacts_fingerprint,
            "created_at": rec.created_at.isoformat(),
            "completed_at": rec.completed_at.isoformat() if rec.completed_at else None,
            "archived": True,
        }

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
import uuid

from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from docsrag.models import IngestionRunRecord
from docsrag.services.rag.types import RUN_STATUSES, IngestionStats

TERMINAL_STATUSES = frozenset(RUN_STATUSES) - {"running"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _duration_ms(started_at: datetime, completed_at: datetime) -> int:
    return max(0, int((as_utc(completed_at) - as_utc(started_at)).total_seconds() * 1000))


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return as_utc(value).isoformat()


@dataclass(frozen=True)
class IngestionRun:
    run_id: str
    status: str
    stats: dict[str, Any]
    started_at: datetime
    completed_at: datetime | None
    duration_ms: int | None
    triggered_by: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "stats": self.stats,
            "started_at": _to_iso(self.started_at),
            "completed_at": _to_iso(self.completed_at),
            "duration_ms": self.duration_ms,
            "triggered_by": self.triggered_by,
        }


def _from_record(record: IngestionRunRecord) -> IngestionRun:
    return IngestionRun(
        run_id=record.run_id,
        status=record.status,
        stats=dict(record.stats or {}),
        started_at=as_utc(record.started_at),
        completed_at=as_utc(record.completed_at) if record.completed_at else None,
        duration_ms=record.duration_ms,
        triggered_by=record.triggered_by,
    )


class IngestionRunStore:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def create(self, triggered_by: str) -> IngestionRun:
        record = IngestionRunRecord(
            run_id=str(uuid.uuid4()),
            status="running",
            stats=IngestionStats().to_dict(),
            started_at=utcnow(),
            completed_at=None,
            duration_ms=None,
            triggered_by=triggered_by,
        )
        with Session(self._engine) as session:
            session.add(record)
            session.commit()
            return _from_record(record)

    def finish(self, run: IngestionRun, *, status: str, stats: IngestionStats) -> bool:
        """Move a running run to a terminal status. Returns False if it already left ``running``."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal run status: {status}")

        completed_at = utcnow()
        with Session(self._engine) as session, session.begin():
            result = session.execute(
                update(IngestionRunRecord)
                .where(IngestionRunRecord.run_id == run.run_id)
                .where(IngestionRunRecord.status == "running")
                .values(
                    status=status,
                    stats=stats.to_dict(),
                    completed_at=completed_at,
                    duration_ms=_duration_ms(run.started_at, completed_at),
                )
            )
        return result.rowcount == 1

    def cancel(self, run_id: str) -> bool:
        with Session(self._engine) as session, session.begin():
            record = session.scalar(
                select(IngestionRunRecord)
                .where(IngestionRunRecord.run_id == run_id)
                .where(IngestionRunRecord.status == "running")
            )
            if record is None:
                return False
            completed_at = utcnow()
            result = session.execute(
                update(IngestionRunRecord)
                .where(IngestionRunRecord.run_id == run_id)
                .where(IngestionRunRecord.status == "running")
                .values(
                    status="cancelled",
                    completed_at=completed_at,
                    duration_ms=_duration_ms(record.started_at, completed_at),
                )
            )
        return result.rowcount == 1

    def get(self, run_id: str) -> IngestionRun | None:
        with Session(self._engine) as session:
            record = session.get(IngestionRunRecord, run_id)
            return _from_record(record) if record is not None else None

    def list_recent(self, limit: int = 20) -> list[IngestionRun]:
        with Session(self._engine) as session:
            records = session.scalars(
                select(IngestionRunRecord)
                .order_by(IngestionRunRecord.started_at.desc())
                .limit(limit)
            ).all()
            return [_from_record(record) for record in records]

    def latest_completed(self) -> IngestionRun | None:
        with Session(self._engine) as session:
            record = session.scalar(
                select(IngestionRunRecord)
                .where(IngestionRunRecord.status == "completed")
                .order_by(IngestionRunRecord.completed_at.desc())
                .limit(1)
            )
            return _from_record(record) if record is not None else None

    def find_running(self) -> IngestionRun | None:
        with Session(self._engine) as session:
            record = session.scalar(
                select(IngestionRunRecord)
                .where(IngestionRunRecord.status == "running")
                .order_by(IngestionRunRecord.started_at.asc())
                .limit(1)
            )
            return _from_record(record) if record is not None else None

# job_store.py
import threading
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel
from sqlalchemy import JSON, Column, func
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Field as SQLField, Session, create_engine, select

from exceptions import InvalidJobTransition
from reference_store import JobStatus

# Pending -> Running -> Success | Failed, and Failed -> Pending on retry
ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.RUNNING},
    JobStatus.RUNNING: {JobStatus.SUCCESS, JobStatus.FAILED},
    JobStatus.FAILED: {JobStatus.PENDING},
    JobStatus.SUCCESS: set(),
}

IMMUTABLE_FIELDS = {"id", "position", "created_at", "prompt"}


class InputType(str, Enum):
    TEXT = "Text"
    IMAGE = "Image"


class Job(SQLModel, table=True):
    id: str = SQLField(primary_key=True, index=True)
    position: int = SQLField(index=True)  # insertion order, FIFO promotion
    created_at: datetime = SQLField(default_factory=lambda: datetime.now(timezone.utc))
    status: JobStatus = JobStatus.PENDING
    prompt: str
    input_type: InputType = InputType.TEXT
    model: str
    aspect_ratio: str
    output_count: int = 1
    image_data: Optional[bytes] = None
    image_mime_type: Optional[str] = None
    reference_character_names: List[str] = SQLField(default_factory=list, sa_column=Column(JSON))
    progress_message: Optional[str] = None
    result_url: Optional[str] = None
    error: Optional[str] = None


class JobDraft(BaseModel):
    """Everything needed to create a job; id, status and position are assigned by the store."""
    prompt: str
    input_type: InputType = InputType.TEXT
    model: str
    aspect_ratio: str
    output_count: int = 1
    image_data: Optional[bytes] = None
    image_mime_type: Optional[str] = None
    reference_character_names: List[str] = []


def make_engine(db_url: str):
    if db_url in ("sqlite://", "sqlite:///:memory:"):
        # one shared connection, otherwise every session sees an empty database
        return create_engine(db_url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    if db_url.startswith("sqlite"):
        return create_engine(db_url, connect_args={"check_same_thread": False})
    return create_engine(db_url)


class JobStore:
    def __init__(self, engine):
        self.engine = engine
        self._lock = threading.Lock()

    def init_db(self):
        SQLModel.metadata.create_all(self.engine)

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    def create(self, drafts: List[JobDraft]) -> List[Job]:
        with self._lock, self._session() as session:
            last = session.exec(select(func.max(Job.position))).one()
            position = (last or 0) + 1
            jobs = []
            for offset, draft in enumerate(drafts):
                job = Job(
                    id=uuid.uuid4().hex,
                    position=position + offset,
                    status=JobStatus.PENDING,
                    **draft.model_dump(),
                )
                session.add(job)
                jobs.append(job)
            session.commit()
            return jobs

    def get(self, job_id: str) -> Optional[Job]:
        with self._session() as session:
            return session.get(Job, job_id)

    def list(self, status: Optional[JobStatus] = None) -> List[Job]:
        with self._session() as session:
            stmt = select(Job).order_by(Job.position)
            if status is not None:
                stmt = stmt.where(Job.status == status)
            return list(session.exec(stmt).all())

    def count(self, status: JobStatus) -> int:
        with self._session() as session:
            return session.exec(select(func.count()).select_from(Job).where(Job.status == status)).one()

    def update(self, job_id: str, **fields) -> Optional[Job]:
        """
        Merge-patch a job. Only the named fields change; an unknown id is ignored.

        Raises:
            InvalidJobTransition: the status change is not part of the job lifecycle
        """
        frozen = IMMUTABLE_FIELDS & set(fields)
        if frozen:
            raise ValueError(f"Cannot patch job fields: {sorted(frozen)}")
        with self._lock, self._session() as session:
            job = session.get(Job, job_id)
            if not job:
                return None
            if not fields:
                return job
            new_status = fields.get("status")
            if new_status is not None and new_status != job.status \
                    and new_status not in ALLOWED_TRANSITIONS[job.status]:
                raise InvalidJobTransition(job_id, job.status.value, JobStatus(new_status).value)
            for k, v in fields.items():
                setattr(job, k, v)
            session.add(job)
            session.commit()
            return job

    def retry(self, job_id: str) -> Optional[Job]:
        """Put a failed job back in the queue with its previous outcome cleared."""
        job = self.get(job_id)
        if not job:
            return None
        if job.status != JobStatus.FAILED:
            raise InvalidJobTransition(job_id, job.status.value, JobStatus.PENDING.value)
        return self.update(
            job_id, status=JobStatus.PENDING, error=None, progress_message=None, result_url=None,
        )

    def remove(self, job_id: str) -> bool:
        with self._lock, self._session() as session:
            job = session.get(Job, job_id)
            if not job:
                return False
            session.delete(job)
            session.commit()
            return True

    def clear(self) -> int:
        with self._lock, self._session() as session:
            jobs = session.exec(select(Job)).all()
            for job in jobs:
                session.delete(job)
            session.commit()
            return len(jobs)

    def fail_interrupted(self) -> int:
        """Mark jobs left Running by a previous process as Failed so they can be retried."""
        with self._lock, self._session() as session:
            jobs = session.exec(select(Job).where(Job.status == JobStatus.RUNNING)).all()
            for job in jobs:
                job.status = JobStatus.FAILED
                job.error = "Interrupted before completion"
                job.progress_message = None
                session.add(job)
            session.commit()
            return len(jobs)

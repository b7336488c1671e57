# job_scheduler.py
# ------------------------------------------------------------------------------------
#  Bounded job scheduler for the bulk video queue.
#  Keeps at most `max_concurrent` jobs Running. Slots are refilled by a single
#  scheduling pass that runs whenever the queue changes (start, enqueue, retry,
#  a job finishing); there is no timer. The pass runs synchronously on the event
#  loop, so a job cannot be promoted twice.
# ------------------------------------------------------------------------------------

import asyncio
from typing import Dict, List, Optional

from job_store import Job, JobDraft, JobStore
from logging_config import get_logger
from reference_store import JobStatus
from request_builder import ImagePart
from storage import job_render_key

logger = get_logger("job_scheduler")

MAX_CONCURRENT_JOBS = 4


class JobScheduler:
    def __init__(self, store: JobStore, gateway, storage, max_concurrent: int = MAX_CONCURRENT_JOBS):
        self.store = store
        self.gateway = gateway
        self.storage = storage
        self.max_concurrent = max_concurrent
        self.active = False
        self._tasks: Dict[str, asyncio.Task] = {}

    # ---------- Control ----------
    def start(self) -> None:
        """Activate the scheduler and fill the available slots."""
        self.active = True
        logger.info("Job processing started")
        self.schedule()

    def stop(self) -> None:
        """Stop promoting new jobs. Running jobs finish on their own."""
        self.active = False

    def enqueue(self, drafts: List[JobDraft]) -> List[Job]:
        jobs = self.store.create(drafts)
        logger.info(f"Queued {len(jobs)} job(s)")
        self.schedule()
        return jobs

    def retry(self, job_id: str) -> Optional[Job]:
        job = self.store.retry(job_id)
        if job is not None:
            logger.info(f"Job {job_id[:6]} re-queued")
            self.schedule()
        return job

    async def wait_idle(self) -> None:
        """Wait until no job task is in flight."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    # ---------- Scheduling pass ----------
    def schedule(self) -> List[Job]:
        """
        One slot-filling pass. Returns the jobs promoted to Running.
        """
        if not self.active:
            return []

        # a removed job may still be in flight
        running = max(self.store.count(JobStatus.RUNNING), len(self._tasks))
        pending = self.store.list(JobStatus.PENDING)

        if running == 0 and not pending:
            self.active = False
            logger.info("Job processing complete")
            return []

        available_slots = self.max_concurrent - running
        if available_slots <= 0:
            return []

        promoted = []
        for job in pending[:available_slots]:
            job = self.store.update(job.id, status=JobStatus.RUNNING, progress_message=None)
            if job is None:
                continue
            promoted.append(job)
            self._tasks[job.id] = asyncio.get_running_loop().create_task(self._process(job))
            logger.info(f"Job {job.id[:6]} started ({running + len(promoted)}/{self.max_concurrent} running)")
        return promoted

    # ---------- Worker ----------
    async def _process(self, job: Job) -> None:
        """Run one job to its terminal state, then refill the slots."""
        try:
            def on_progress(message: str) -> None:
                self.store.update(job.id, progress_message=message)

            seed = None
            if job.image_data:
                seed = ImagePart(data=job.image_data, mime_type=job.image_mime_type or "image/png")

            video_bytes = await self.gateway.generate_video(
                prompt=job.prompt,
                model=job.model,
                aspect_ratio=job.aspect_ratio,
                image=seed,
                on_progress=on_progress,
            )
            video_url = self.storage.save(video_bytes, job_render_key(job.id), "video/mp4")
            self.store.update(job.id, status=JobStatus.SUCCESS, result_url=video_url, error=None)
            logger.info(f"Job {job.id[:6]} succeeded -> {video_url}")
        except Exception as e:
            logger.error(f"Job {job.id[:6]} failed: {e}")
            self.store.update(
                job.id,
                status=JobStatus.FAILED,
                error=str(e) or "An unknown error occurred.",
            )
        finally:
            self._tasks.pop(job.id, None)
            self.schedule()

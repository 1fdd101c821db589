"""student_etl.jobs

Process-wide registry of ingestion jobs.

A JobRegistry owns one BatchProcessor per job and keeps the latest Progress
snapshot for each.  Observers either poll (get_progress / wait_for_job) or
subscribe to a queue that receives every snapshot in emission order.

Lifetime:
  - completed jobs are removed retention_seconds after completion
    (deferred timer, plus the periodic sweep as a backstop)
  - jobs that never complete are removed stale_after_seconds after creation
  - cleanup drops the entry, then deletes the failed-record artifact
"""

from __future__ import annotations

import logging
import queue
import threading
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Protocol

from tenacity import RetryError, Retrying, retry_if_result, stop_after_attempt, wait_fixed

from student_etl.config import Settings
from student_etl.processor import BatchProcessor, Pacing, Store, Upserter
from student_etl.shared import Progress
from student_etl.transform import RecordTransformer
from student_etl.upsert import upsert_record

log = logging.getLogger(__name__)


@dataclass
class Job:
    id: str
    processor: BatchProcessor
    progress: Progress
    dry_run: bool
    created_at: datetime
    completed_at: datetime | None = None
    source_path: Path | None = None
    thread: threading.Thread | None = None


# ---------------------------------------------------------------------------
# Job store
# ---------------------------------------------------------------------------

class JobStore(Protocol):
    def add(self, job: Job) -> None: ...

    def get(self, job_id: str) -> Job | None: ...

    def remove(self, job_id: str) -> Job | None: ...

    def values(self) -> list[Job]: ...


class InMemoryJobStore:
    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()

    def add(self, job: Job) -> None:
        with self._lock:
            self._jobs[job.id] = job

    def get(self, job_id: str) -> Job | None:
        with self._lock:
            return self._jobs.get(job_id)

    def remove(self, job_id: str) -> Job | None:
        with self._lock:
            return self._jobs.pop(job_id, None)

    def values(self) -> list[Job]:
        with self._lock:
            return list(self._jobs.values())


# ---------------------------------------------------------------------------
# Progress fan-out
# ---------------------------------------------------------------------------

class ProgressSubscription:
    """Queue of snapshots for one job.  Iteration stops after a complete one."""

    def __init__(
        self,
        broadcaster: "ProgressBroadcaster",
        job_id: str,
        q: "queue.Queue[Progress]",
        timeout: float | None = None,
    ) -> None:
        self.job_id = job_id
        self._broadcaster = broadcaster
        self._queue = q
        self._timeout = timeout

    def get(self, timeout: float | None = None) -> Progress:
        """Next snapshot; raises queue.Empty when timeout elapses."""
        return self._queue.get(timeout=timeout)

    def __iter__(self) -> Iterator[Progress]:
        while True:
            snapshot = self._queue.get(timeout=self._timeout)
            yield snapshot
            if snapshot.is_complete:
                return

    def close(self) -> None:
        self._broadcaster.unsubscribe(self.job_id, self._queue)

    def __enter__(self) -> "ProgressSubscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class ProgressBroadcaster:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[queue.Queue]] = defaultdict(list)
        self._latest: dict[str, Progress] = {}

    def publish(self, snapshot: Progress) -> None:
        with self._lock:
            self._latest[snapshot.job_id] = snapshot
            for q in self._subscribers.get(snapshot.job_id, []):
                q.put_nowait(snapshot)

    def subscribe(self, job_id: str, timeout: float | None = None) -> ProgressSubscription:
        q: queue.Queue[Progress] = queue.Queue()
        with self._lock:
            self._subscribers[job_id].append(q)
            latest = self._latest.get(job_id)
            if latest is not None:
                q.put_nowait(latest)
        return ProgressSubscription(self, job_id, q, timeout=timeout)

    def unsubscribe(self, job_id: str, q: queue.Queue) -> None:
        with self._lock:
            subscribers = self._subscribers.get(job_id, [])
            if q in subscribers:
                subscribers.remove(q)
            if not subscribers:
                self._subscribers.pop(job_id, None)

    def latest(self, job_id: str) -> Progress | None:
        with self._lock:
            return self._latest.get(job_id)

    def forget(self, job_id: str) -> None:
        with self._lock:
            self._latest.pop(job_id, None)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _unlink_artifact(job_id: str, path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        log.warning("[%s] could not delete %s: %s", job_id, path, exc)


class JobRegistry:
    def __init__(
        self,
        database: Store,
        settings: Settings,
        store: JobStore | None = None,
        transformer: RecordTransformer | None = None,
        upserter: Upserter = upsert_record,
    ) -> None:
        self._database = database
        self._settings = settings
        self._store = store if store is not None else InMemoryJobStore()
        self._transformer = transformer or RecordTransformer(
            salt_rounds=settings.salt_rounds,
            id_max_retries=settings.id_max_retries,
        )
        self._upserter = upserter
        self._broadcaster = ProgressBroadcaster()
        self._lock = threading.Lock()
        self._timers: dict[str, threading.Timer] = {}
        # Artifacts of jobs purged while still running, unlinked once they stop.
        self._purged: dict[str, Path] = {}
        self._sweeper: threading.Thread | None = None
        self._stop = threading.Event()

    # -- creation -------------------------------------------------------------

    def create_job(
        self,
        dry_run: bool = False,
        batch_size: int | None = None,
        job_id: str | None = None,
    ) -> Job:
        job_id = job_id or str(uuid.uuid4())
        s = self._settings
        processor = BatchProcessor(
            job_id,
            self._database,
            dry_run=dry_run,
            batch_size=batch_size or s.batch_size,
            failed_dir=s.temp_dir,
            on_progress=lambda snapshot: self._on_progress(job_id, snapshot),
            transformer=self._transformer,
            upserter=self._upserter,
            pacing=Pacing(
                row_delay=s.row_delay_seconds,
                batch_delay=s.batch_delay_seconds,
                initializing_delay=s.initializing_delay_seconds,
            ),
        )
        job = Job(
            id=job_id,
            processor=processor,
            progress=processor.get_progress(),
            dry_run=dry_run,
            created_at=_utcnow(),
        )
        self._store.add(job)
        self._broadcaster.publish(job.progress)
        log.info("Created job %s (dry_run=%s)", job_id, dry_run)
        self.start_sweeper()
        return job

    def start_job(self, job: Job, path: Path | str) -> threading.Thread:
        """Run the job's processor over path in a background thread."""
        job.source_path = Path(path)

        def run() -> None:
            try:
                job.processor.process_file(job.source_path)
            except Exception:
                # Already reflected in the job's terminal snapshot.
                log.exception("[%s] job ended with a fatal error", job.id)

        thread = threading.Thread(target=run, name=f"ingest-{job.id[:8]}", daemon=True)
        job.thread = thread
        thread.start()
        return thread

    def _on_progress(self, job_id: str, snapshot: Progress) -> None:
        job = self._store.get(job_id)
        if job is None:
            # Not registered yet, or purged while running.
            if snapshot.is_complete:
                with self._lock:
                    path = self._purged.pop(job_id, None)
                if path is not None:
                    _unlink_artifact(job_id, path)
            return
        job.progress = snapshot
        if snapshot.is_complete and job.completed_at is None:
            job.completed_at = _utcnow()
            self._schedule_cleanup(job_id)
        self._broadcaster.publish(snapshot)

    def _schedule_cleanup(self, job_id: str) -> None:
        if self._stop.is_set():
            return
        timer = threading.Timer(self._settings.retention_seconds, self.cleanup, args=(job_id,))
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(job_id, None)
            self._timers[job_id] = timer
        if previous is not None:
            previous.cancel()
        timer.start()

    # -- queries --------------------------------------------------------------

    def get_job(self, job_id: str) -> Job | None:
        return self._store.get(job_id)

    def get_progress(self, job_id: str) -> Progress | None:
        job = self._store.get(job_id)
        return job.progress if job is not None else None

    def failed_artifact_path(self, job_id: str) -> Path | None:
        job = self._store.get(job_id)
        if job is None:
            return None
        path = job.processor.failed_artifact_path
        return path if path.exists() else None

    def active_jobs(self) -> list[Job]:
        return [j for j in self._store.values() if not j.progress.is_complete]

    def completed_jobs(self) -> list[Job]:
        return [j for j in self._store.values() if j.progress.is_complete]

    def wait_for_job(self, job_id: str, attempts: int = 10, interval: float = 1.0) -> Job | None:
        """Look job_id up, retrying while a just-created job registers."""
        retrying = Retrying(
            stop=stop_after_attempt(attempts),
            wait=wait_fixed(interval),
            retry=retry_if_result(lambda job: job is None),
        )
        try:
            return retrying(self._store.get, job_id)
        except RetryError:
            log.warning("Job %s not found after %d attempts", job_id, attempts)
            return None

    def subscribe(self, job_id: str, timeout: float | None = None) -> ProgressSubscription:
        return self._broadcaster.subscribe(job_id, timeout=timeout)

    # -- control --------------------------------------------------------------

    def cancel_job(self, job_id: str) -> bool:
        job = self._store.get(job_id)
        if job is None or job.progress.is_complete:
            return False
        job.processor.cancel()
        return True

    def cleanup(self, job_id: str) -> bool:
        """Drop the job and delete its failed-record artifact.  Idempotent.

        A job purged mid-run is cancelled; its artifact is deleted again once
        the processor stops.
        """
        with self._lock:
            timer = self._timers.pop(job_id, None)
        if timer is not None and timer is not threading.current_thread():
            timer.cancel()

        job = self._store.remove(job_id)
        if job is None:
            return False
        path = job.processor.failed_artifact_path
        running = job.thread is not None and job.thread.is_alive()
        if running and not job.processor.get_progress().is_complete:
            with self._lock:
                self._purged[job_id] = path
            job.processor.cancel()
            if job.processor.get_progress().is_complete:
                with self._lock:
                    self._purged.pop(job_id, None)
        else:
            job.processor.cancel()

        _unlink_artifact(job_id, path)
        self._broadcaster.forget(job_id)
        log.info("Cleaned up job %s", job_id)
        return True

    def sweep(self, now: datetime | None = None) -> list[str]:
        """Remove expired completed jobs and stale unfinished ones."""
        now = now or _utcnow()
        retention = self._settings.retention_seconds
        stale_after = self._settings.stale_after_seconds
        expired = []
        for job in self._store.values():
            if job.progress.is_complete:
                done_at = job.completed_at or job.created_at
                if (now - done_at).total_seconds() > retention:
                    expired.append(job.id)
            elif (now - job.created_at).total_seconds() > stale_after:
                log.warning("Job %s is stale (created %s); removing", job.id, job.created_at)
                expired.append(job.id)
        for job_id in expired:
            self.cleanup(job_id)
        if expired:
            log.info("Sweep removed %d job(s)", len(expired))
        return expired

    def start_sweeper(self) -> None:
        with self._lock:
            if self._sweeper is not None or self._stop.is_set():
                return
            self._sweeper = threading.Thread(
                target=self._sweep_loop, name="job-sweeper", daemon=True
            )
        self._sweeper.start()

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self._settings.sweep_interval_seconds):
            try:
                self.sweep()
            except Exception:
                log.exception("Job sweep failed")

    def shutdown(self, timeout: float | None = 5.0) -> None:
        """Stop the sweeper and pending cleanup timers.  Jobs are left as they are."""
        self._stop.set()
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
            sweeper = self._sweeper
        for timer in timers:
            timer.cancel()
        if sweeper is not None:
            sweeper.join(timeout)

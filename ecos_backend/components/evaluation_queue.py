"""In-process queue that grades completed sessions in the background."""
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ecos_backend import config
from ecos_backend.ecos_judge.judge import EvaluationEngine, EvaluationResult
from ecos_backend.errors import EcosError, EvaluationFailedError

logger = logging.getLogger(__name__)


@dataclass
class EvaluationJob:
    session_id: str
    status: str = "pending"  # pending | running | completed | failed
    attempts: int = 0
    last_error: Optional[str] = None
    insufficient_content: Optional[bool] = None
    enqueued_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def active(self) -> bool:
        return self.status in ("pending", "running")

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "status": self.status,
            "attempts": self.attempts,
            "lastError": self.last_error,
            "insufficientContent": self.insufficient_content,
        }


class EvaluationQueue:
    """
    asyncio.Queue + worker tasks around EvaluationEngine.

    EvaluationFailedError is retried up to max_attempts with exponential
    backoff (retry_delay_sec * 2 ** (attempt - 1)); other errors fail the job
    at once. Without started workers, enqueue only records the job and
    evaluate_now() grades inline. Finished jobs are dropped job_ttl_sec after
    they end; per-session locks live only while someone holds or awaits them.
    """

    def __init__(
        self,
        engine: EvaluationEngine,
        workers: Optional[int] = None,
        max_attempts: Optional[int] = None,
        retry_delay_sec: Optional[float] = None,
        job_ttl_sec: Optional[float] = None,
    ):
        self.engine = engine
        self.workers = workers or config.EVALUATION_WORKERS
        self.max_attempts = max(1, max_attempts or config.EVALUATION_MAX_ATTEMPTS)
        self.retry_delay_sec = config.EVALUATION_RETRY_DELAY_SEC if retry_delay_sec is None else retry_delay_sec
        self.job_ttl_sec = config.EVALUATION_JOB_TTL_SEC if job_ttl_sec is None else job_ttl_sec
        self._jobs: Dict[str, EvaluationJob] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._queue: Optional[asyncio.Queue] = None
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self):
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._tasks = [asyncio.create_task(self._worker(n)) for n in range(self.workers)]
        logger.info(f"EvaluationQueue: Started {self.workers} worker(s)")

    async def stop(self):
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._queue = None
        logger.info("EvaluationQueue: Stopped")

    async def join(self):
        """Wait until every queued job has been processed"""
        if self._queue is not None:
            await self._queue.join()

    def get_job(self, session_id: str) -> Optional[EvaluationJob]:
        return self._jobs.get(session_id)

    @asynccontextmanager
    async def _session_lock(self, session_id: str):
        """One evaluation of a session at a time; the entry goes away with its last user"""
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[session_id] -= 1
            if not self._lock_users[session_id]:
                del self._lock_users[session_id]
                del self._locks[session_id]

    def _prune(self):
        cutoff = time.time() - self.job_ttl_sec
        expired = [
            session_id for session_id, job in self._jobs.items()
            if not job.active and job.finished_at is not None and job.finished_at <= cutoff
        ]
        for session_id in expired:
            del self._jobs[session_id]
        if expired:
            logger.debug(f"EvaluationQueue: Dropped {len(expired)} finished job(s)")

    async def enqueue(self, session_id: str) -> EvaluationJob:
        self._prune()
        job = self._jobs.get(session_id)
        if job is not None and job.active:
            logger.info(f"EvaluationQueue: Session {session_id} already queued ({job.status})")
            return job

        job = EvaluationJob(session_id=session_id)
        self._jobs[session_id] = job
        if self._queue is not None:
            self._queue.put_nowait(session_id)
            logger.info(f"EvaluationQueue: Queued evaluation of session {session_id}")
        else:
            logger.info(f"EvaluationQueue: No worker running, session {session_id} will be graded on demand")
        return job

    async def _attempt(self, job: EvaluationJob) -> EvaluationResult:
        job.status = "running"
        job.attempts += 1
        async with self._session_lock(job.session_id):
            result = await self.engine.evaluate(job.session_id)
        job.status = "completed"
        job.last_error = None
        job.insufficient_content = result.insufficient_content
        job.finished_at = time.time()
        return result

    def _fail(self, job: EvaluationJob, error: Exception):
        job.status = "failed"
        job.last_error = str(error)
        job.finished_at = time.time()

    async def evaluate_now(self, session_id: str) -> EvaluationResult:
        """Grade inline (manual retry, report on demand); errors propagate to the caller"""
        self._prune()
        job = self._jobs.get(session_id)
        if job is None or not job.active:
            job = EvaluationJob(session_id=session_id)
            self._jobs[session_id] = job
        try:
            return await self._attempt(job)
        except Exception as e:
            # any failure ends the job, so it no longer counts as in flight
            self._fail(job, e)
            raise

    async def _run(self, job: EvaluationJob):
        while True:
            try:
                await self._attempt(job)
                logger.info(
                    f"EvaluationQueue: Session {job.session_id} evaluated "
                    f"(attempt {job.attempts}, insufficient={job.insufficient_content})"
                )
                return
            except EvaluationFailedError as e:
                if job.attempts >= self.max_attempts:
                    logger.error(f"EvaluationQueue: Giving up on session {job.session_id} after {job.attempts} attempts: {e}")
                    self._fail(job, e)
                    return
                delay = self.retry_delay_sec * (2 ** (job.attempts - 1))
                logger.warning(
                    f"EvaluationQueue: Attempt {job.attempts} for session {job.session_id} failed ({e}), "
                    f"retrying in {delay:.1f}s"
                )
                job.status = "pending"
                job.last_error = str(e)
                await asyncio.sleep(delay)
            except EcosError as e:
                logger.warning(f"EvaluationQueue: Session {job.session_id} cannot be evaluated: {e}")
                self._fail(job, e)
                return

    async def _worker(self, n: int):
        logger.debug(f"EvaluationQueue: Worker {n} ready")
        while True:
            session_id = await self._queue.get()
            try:
                job = self._jobs.get(session_id) or EvaluationJob(session_id=session_id)
                await self._run(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # keep the worker alive; the job records the failure
                logger.error(f"EvaluationQueue: Unexpected error on session {session_id}: {e}", exc_info=True)
                self._fail(self._jobs.setdefault(session_id, EvaluationJob(session_id=session_id)), e)
            finally:
                self._queue.task_done()

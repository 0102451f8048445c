"""Job lifecycle: submit, poll status, fetch results, cancel.

Every call to the external service goes through the circuit breaker, the
retry policy and the timeout executor, in that order. At most one submit or
status poll per job is in flight at any time; concurrent callers share it.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from loguru import logger

from .circuit import CircuitBreakerRegistry, Fallback, QueueFallback, RejectFallback
from .errors import CircuitBreakerOpenError, RelayError, ValidationError, is_transient
from .events import Listeners
from .models import (
    Artifact,
    Config,
    Job,
    JobSpec,
    JobStatus,
    OfflineAction,
    Priority,
    QueuedResult,
    RemoteStatus,
    SubmitOutcome,
    utcnow,
)
from .offline import OfflineQueue
from .retry import RetryPolicy
from .singleflight import SingleFlight
from .storage import Storage

log = logger.bind(component="orchestrator")

AI_SERVICE = "external-ai-api"
SUBMIT_ACTION = "submit_job"
QUEUED_MESSAGE = "Job queued, will submit when online"

_REMOTE_TO_LOCAL = {
    RemoteStatus.QUEUED: JobStatus.PENDING,
    RemoteStatus.RUNNING: JobStatus.RUNNING,
    RemoteStatus.SUCCESS: JobStatus.SUCCEEDED,
    RemoteStatus.FAILED: JobStatus.FAILED,
}


class JobService(Protocol):
    """The external AI service as seen by the orchestrator."""

    async def submit(self, spec: JobSpec) -> str: ...

    async def get_status(self, job_id: str) -> RemoteStatus: ...

    async def get_result(self, job_id: str) -> List[Artifact]: ...

    async def cancel(self, job_id: str) -> None: ...


def placeholder_id(spec: JobSpec) -> str:
    """Queue id of a deferred submission; later actions may depend on it."""
    return f"submit-{spec.client_ref}"


class JobOrchestrator:
    """Owns every Job record and drives it to a terminal state.

    Callers only ever receive copies of jobs.
    """

    def __init__(
        self,
        service: JobService,
        retry: RetryPolicy,
        breakers: CircuitBreakerRegistry,
        offline: OfflineQueue,
        storage: Optional[Storage] = None,
        config: Optional[Config] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        auto_poll: bool = True,
    ) -> None:
        self._service = service
        self._retry = retry
        self._breaker = breakers.get_or_create(AI_SERVICE, fallback=RejectFallback())
        self._offline = offline
        self._storage = storage
        self._config = config or (storage.get_config() if storage else Config())
        self._sleep = sleep
        self._clock = clock
        self._auto_poll = auto_poll
        self._jobs: Dict[str, Job] = {}
        self._pollers: Dict[str, asyncio.Task] = {}
        self._flights = SingleFlight()
        self._job_listeners: Listeners[Job] = Listeners("jobs")

        offline.register_handler(SUBMIT_ACTION, self._sync_submission)
        if storage:
            self._jobs = {job.id: job for job in storage.get_all_jobs()}

    def on_job_update(self, listener: Callable[[Job], None]) -> Callable[[], None]:
        return self._job_listeners.subscribe(listener)

    def get_job(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[Job]:
        return [
            job.model_copy(deep=True)
            for job in self._jobs.values()
            if status is None or job.status == status
        ]

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise KeyError(f"Unknown job: {job_id}")
        return job

    async def _call(
        self,
        operation: str,
        fn: Callable[[], Awaitable[Any]],
        fallback: Optional[Fallback] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Any:
        return await self._breaker.execute(
            lambda: self._retry.execute(fn, operation),
            fallback=fallback or RejectFallback(),
            payload=payload,
        )

    # Submission

    async def submit(self, spec: JobSpec) -> SubmitOutcome:
        """Submit a job, or queue it when the service cannot be reached.

        Raises the final error when the submission fails while the
        dependency is considered healthy; no job is created then.
        """
        return await self._flights.do(f"submit:{spec.client_ref}", lambda: self._submit(spec))

    async def _submit(self, spec: JobSpec) -> SubmitOutcome:
        if not self._offline.is_online:
            action_id = await self._offline.queue_action(
                SUBMIT_ACTION,
                spec.model_dump(mode="json"),
                priority=Priority.CRITICAL,
                action_id=placeholder_id(spec),
            )
            log.info(f"Offline, queued submission {action_id}")
            return SubmitOutcome(queued=True, action_id=action_id, message=QUEUED_MESSAGE)

        result = await self._call(
            "submit",
            lambda: self._service.submit(spec),
            fallback=QueueFallback(
                self._offline,
                SUBMIT_ACTION,
                priority=Priority.CRITICAL,
                max_retries=self._config.max_retries,
                action_id=placeholder_id(spec),
            ),
            payload=spec.model_dump(mode="json"),
        )
        if isinstance(result, QueuedResult):
            return SubmitOutcome(queued=True, action_id=result.action_id, message=QUEUED_MESSAGE)

        job = self._start_job(result, spec)
        return SubmitOutcome(job=job.model_copy(deep=True), message=f"Job {job.id} submitted")

    async def _sync_submission(self, action: OfflineAction) -> None:
        """Offline queue handler replaying a deferred submission."""
        spec = JobSpec(**action.payload)
        await self._flights.do(f"submit:{spec.client_ref}", lambda: self._submit_queued(spec))

    async def _submit_queued(self, spec: JobSpec) -> None:
        job_id = await self._call("submit", lambda: self._service.submit(spec))
        self._start_job(job_id, spec)

    async def cancel_queued(self, action_id: str) -> bool:
        """Drop a submission that is still waiting in the offline queue."""
        return await self._offline.cancel(action_id)

    def _start_job(self, job_id: str, spec: JobSpec) -> Job:
        job = Job(id=job_id, region=spec.region, client_ref=spec.client_ref)
        self._jobs[job_id] = job
        self._save(job)
        log.info(f"Job {job_id} submitted")
        if self._auto_poll:
            self.track(job_id)
        return job

    # Polling

    def track(self, job_id: str) -> None:
        """Start the poll loop for a job unless one is already running."""
        job = self._require(job_id)
        if job.status.is_terminal:
            return
        poller = self._pollers.get(job_id)
        if poller is not None and not poller.done():
            return
        poller = asyncio.get_running_loop().create_task(self._poll_loop(job_id))
        self._pollers[job_id] = poller
        poller.add_done_callback(lambda t, job_id=job_id: self._forget_poller(job_id, t))

    def _forget_poller(self, job_id: str, task: asyncio.Task) -> None:
        if self._pollers.get(job_id) is task:
            del self._pollers[job_id]
        if not task.cancelled() and task.exception() is not None:
            log.opt(exception=task.exception()).error(f"Poll loop for {job_id} crashed")

    def resume(self) -> None:
        """Restart polling for every job that has not finished yet."""
        for job in list(self._jobs.values()):
            if not job.status.is_terminal:
                self.track(job.id)

    async def poll(self, job_id: str) -> JobStatus:
        """Check a job's status once; concurrent callers share the request."""
        job = self._require(job_id)
        if job.status.is_terminal:
            return job.status
        try:
            return await self._flights.do(f"poll:{job_id}", lambda: self._poll_once(job))
        except asyncio.CancelledError:
            # The shared request was dropped by cancel(); this caller was not.
            current = asyncio.current_task()
            if job.status != JobStatus.CANCELLED or (current is not None and current.cancelling()):
                raise
            return job.status

    async def _poll_once(self, job: Job) -> JobStatus:
        job.attempts += 1
        job.last_polled_at = utcnow()
        remote = await self._call("poll", lambda: self._service.get_status(job.id))
        log.debug(f"Job {job.id} remote status {remote.value}")

        target = _REMOTE_TO_LOCAL[remote]
        if target == JobStatus.FAILED and not job.status.is_terminal:
            job.error = "Job failed on the remote service"
        changed = self._set_status(job, target)
        if changed and target == JobStatus.SUCCEEDED:
            await self._fetch(job)
        self._save(job)
        return job.status

    async def _poll_loop(self, job_id: str) -> None:
        job = self._jobs[job_id]
        started = self._clock()
        interval = self._config.poll_initial_interval
        while True:
            if self._clock() - started >= self._config.poll_timeout:
                self._fail(job, f"Job did not finish within {self._config.poll_timeout:g}s")
                return
            try:
                status = await self.poll(job_id)
            except RelayError as e:
                if not (is_transient(e) or isinstance(e, CircuitBreakerOpenError)):
                    self._fail(job, str(e))
                    return
                log.warning(f"Polling {job_id} failed, will try again: {e}")
            else:
                if status.is_terminal:
                    return

            remaining = self._config.poll_timeout - (self._clock() - started)
            await self._sleep(max(0.0, min(interval, remaining)))
            interval = min(interval * self._config.poll_backoff_multiplier, self._config.poll_max_interval)

    async def wait(self, job_id: str) -> Job:
        """Wait until the job's poll loop finishes and return the job."""
        self._require(job_id)
        poller = self._pollers.get(job_id)
        if poller is not None:
            await asyncio.wait({poller})
        return self.get_job(job_id)

    # Results

    async def _fetch(self, job: Job) -> None:
        try:
            job.results = await self._call("result", lambda: self._service.get_result(job.id))
        except RelayError as e:
            job.results = []
            job.fetch_error = str(e)
            log.warning(f"Fetching results of {job.id} failed: {e}")
        else:
            job.fetch_error = None
            log.info(f"Job {job.id} produced {len(job.results)} artifacts")
        self._save(job)
        self._job_listeners.emit(job.model_copy(deep=True))

    async def fetch_results(self, job_id: str) -> Job:
        """Fetch the results of a succeeded job again, without resubmitting it."""
        job = self._require(job_id)
        if job.status != JobStatus.SUCCEEDED:
            raise ValidationError(f"Job {job_id} is {job.status.value}, not succeeded")
        await self._flights.do(f"result:{job_id}", lambda: self._fetch(job))
        return job.model_copy(deep=True)

    # Cancellation

    async def cancel(self, job_id: str) -> bool:
        """Cancel a job locally and tell the service on a best-effort basis.

        Returns False if the job had already finished.
        """
        job = self._require(job_id)
        if not self._set_status(job, JobStatus.CANCELLED):
            return False

        poller = self._pollers.pop(job_id, None)
        if poller is not None:
            poller.cancel()
        self._flights.cancel(f"poll:{job_id}")

        try:
            await self._call("cancel", lambda: self._service.cancel(job_id))
        except RelayError as e:
            log.warning(f"Remote cancel of {job_id} failed, cancelled locally only: {e}")
        return True

    # State

    def _set_status(self, job: Job, status: JobStatus) -> bool:
        """Apply a transition. Terminal jobs never change; running never goes back to pending."""
        if job.status.is_terminal or job.status == status:
            return False
        if job.status == JobStatus.RUNNING and status == JobStatus.PENDING:
            return False
        log.info(f"Job {job.id}: {job.status.value} -> {status.value}")
        job.status = status
        self._save(job)
        self._job_listeners.emit(job.model_copy(deep=True))
        return True

    def _fail(self, job: Job, message: str) -> None:
        if job.status.is_terminal:
            return
        job.error = message
        self._set_status(job, JobStatus.FAILED)

    def _save(self, job: Job) -> None:
        if self._storage:
            self._storage.save_job(job)

    async def close(self) -> None:
        """Stop every poll loop and in-flight request."""
        pollers = list(self._pollers.values())
        for poller in pollers:
            poller.cancel()
        self._flights.cancel_all()
        await asyncio.gather(*pollers, return_exceptions=True)

"""
Job Poller
Fixed-interval polling with attempt ceilings, fan-in groups and cancellation
"""

import asyncio
import inspect
from enum import Enum
from typing import Dict, Optional, Any, Callable, List

from pydantic import BaseModel, Field

from ..core.config import get_settings
from ..core.logging import job_logger
from ..core.result import ErrorKind
from .base import BaseJobClient, JobHandle, JobStatus

settings = get_settings()


class CancellationToken:
    """Cooperative cancellation signal shared by a controller and its pollers"""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def sleep(self, seconds: float) -> bool:
        """Sleep for up to `seconds`; returns True if cancelled meanwhile"""
        if self.cancelled:
            return True
        if seconds <= 0:
            await asyncio.sleep(0)
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True


class PollState(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobFailure(BaseModel):
    """Failure delivered to `on_failed`"""
    job_id: str
    error: str
    kind: ErrorKind
    attempts: int = 0
    key: Optional[str] = None


class PollOutcome(BaseModel):
    """Terminal result of a polling loop"""
    state: PollState
    outputs: Dict[str, Any] = Field(default_factory=dict)
    failure: Optional[JobFailure] = None
    attempts: int = 0

    @property
    def succeeded(self) -> bool:
        return self.state == PollState.SUCCEEDED


async def _invoke(callback: Optional[Callable], *args: Any) -> None:
    """Run a sync or async callback"""
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class JobPoller:
    """Drives a job client's poll() until a terminal state"""

    def __init__(
        self,
        client: BaseJobClient,
        interval: float = None,
        max_attempts: int = None,
        max_consecutive_errors: int = None
    ):
        self.client = client
        self.interval = settings.POLL_INTERVAL_SECONDS if interval is None else interval
        self.max_attempts = max_attempts or settings.POLL_MAX_ATTEMPTS
        self.max_consecutive_errors = (
            settings.MAX_CONSECUTIVE_POLL_ERRORS if max_consecutive_errors is None
            else max_consecutive_errors
        )

    async def poll_until_done(
        self,
        handle: JobHandle,
        on_succeeded: Callable[[Dict[str, str]], Any],
        on_failed: Callable[[JobFailure], Any],
        interval: float = None,
        max_attempts: int = None,
        token: Optional[CancellationToken] = None,
        on_progress: Optional[Callable[[JobStatus, int], Any]] = None
    ) -> PollOutcome:
        """Poll one job; exactly one of the callbacks fires unless cancelled"""

        interval = self.interval if interval is None else interval
        max_attempts = max_attempts or self.max_attempts
        token = token or CancellationToken()

        attempts = 0
        consecutive_errors = 0

        while attempts < max_attempts:
            if token.cancelled:
                return self._cancelled(handle, attempts)

            attempts += 1
            result = await self.client.poll(handle)

            # A response that arrives after cancellation is discarded
            if token.cancelled:
                return self._cancelled(handle, attempts)

            if not result.success:
                if result.kind == ErrorKind.TRANSIENT:
                    consecutive_errors += 1
                    job_logger.log_transient_error(handle.job_id, result.error, attempts, consecutive_errors)
                    if consecutive_errors > self.max_consecutive_errors:
                        return await self._fail(
                            handle, on_failed, result.error, ErrorKind.TRANSIENT, attempts
                        )
                else:
                    return await self._fail(
                        handle, on_failed, result.error, result.kind or ErrorKind.PROVIDER, attempts
                    )
            else:
                consecutive_errors = 0
                status: JobStatus = result.data
                job_logger.log_poll(handle.job_id, attempts, status.state.value, status.progress)

                if status.is_success:
                    job_logger.log_job_succeeded(handle.job_id, attempts, status.outputs)
                    await _invoke(on_succeeded, status.outputs)
                    return PollOutcome(
                        state=PollState.SUCCEEDED,
                        outputs=status.outputs,
                        attempts=attempts
                    )

                if status.is_terminal:
                    return await self._fail(
                        handle, on_failed, status.reason or f"Job {status.state.value}",
                        ErrorKind.PROVIDER, attempts
                    )

                await _invoke(on_progress, status, attempts)

            # No wait after the final attempt
            if attempts < max_attempts and await token.sleep(interval):
                return self._cancelled(handle, attempts)

        return await self._fail(
            handle,
            on_failed,
            f"Job {handle.job_id} timed out after {attempts} status checks",
            ErrorKind.TIMEOUT,
            attempts
        )

    async def poll_group(
        self,
        handles: Dict[str, JobHandle],
        on_all_succeeded: Callable[[Dict[str, Dict[str, str]]], Any],
        on_failed: Callable[[JobFailure], Any],
        interval: float = None,
        max_attempts: int = None,
        token: Optional[CancellationToken] = None
    ) -> PollOutcome:
        """
        Poll several independent jobs on a shared cadence.

        Each job's terminal result is latched on its own; `on_all_succeeded`
        fires once after every job has succeeded, and the first failure
        ends the whole group.
        """

        interval = self.interval if interval is None else interval
        max_attempts = max_attempts or self.max_attempts
        token = token or CancellationToken()

        latched: Dict[str, Dict[str, str]] = {}
        consecutive_errors: Dict[str, int] = {key: 0 for key in handles}
        rounds = 0

        if not handles:
            await _invoke(on_all_succeeded, {})
            return PollOutcome(state=PollState.SUCCEEDED)

        while rounds < max_attempts:
            if token.cancelled:
                return self._cancelled_group(handles, rounds)

            rounds += 1
            pending: List[str] = [key for key in handles if key not in latched]
            results = await asyncio.gather(*(self.client.poll(handles[key]) for key in pending))

            if token.cancelled:
                return self._cancelled_group(handles, rounds)

            for key, result in zip(pending, results):
                handle = handles[key]

                if not result.success:
                    if result.kind == ErrorKind.TRANSIENT:
                        consecutive_errors[key] += 1
                        job_logger.log_transient_error(handle.job_id, result.error, rounds, consecutive_errors[key])
                        if consecutive_errors[key] > self.max_consecutive_errors:
                            return await self._fail(
                                handle, on_failed, result.error, ErrorKind.TRANSIENT, rounds, key
                            )
                        continue
                    return await self._fail(
                        handle, on_failed, result.error, result.kind or ErrorKind.PROVIDER, rounds, key
                    )

                consecutive_errors[key] = 0
                status: JobStatus = result.data
                job_logger.log_poll(handle.job_id, rounds, status.state.value, status.progress)

                if status.is_success:
                    job_logger.log_job_succeeded(handle.job_id, rounds, status.outputs, key=key)
                    latched[key] = status.outputs
                elif status.is_terminal:
                    return await self._fail(
                        handle, on_failed, status.reason or f"Job {status.state.value}",
                        ErrorKind.PROVIDER, rounds, key
                    )

            if len(latched) == len(handles):
                ordered = {key: latched[key] for key in handles}
                await _invoke(on_all_succeeded, ordered)
                return PollOutcome(state=PollState.SUCCEEDED, outputs=ordered, attempts=rounds)

            if rounds < max_attempts and await token.sleep(interval):
                return self._cancelled_group(handles, rounds)

        pending_key = next(key for key in handles if key not in latched)
        return await self._fail(
            handles[pending_key],
            on_failed,
            f"Job group timed out after {rounds} rounds; waiting on {pending_key}",
            ErrorKind.TIMEOUT,
            rounds,
            pending_key
        )

    async def _fail(
        self,
        handle: JobHandle,
        on_failed: Callable[[JobFailure], Any],
        error: str,
        kind: ErrorKind,
        attempts: int,
        key: Optional[str] = None
    ) -> PollOutcome:
        failure = JobFailure(job_id=handle.job_id, error=error, kind=kind, attempts=attempts, key=key)
        job_logger.log_job_failed(handle.job_id, error, kind.value, attempts)
        await _invoke(on_failed, failure)
        return PollOutcome(state=PollState.FAILED, failure=failure, attempts=attempts)

    @staticmethod
    def _cancelled(handle: JobHandle, attempts: int) -> PollOutcome:
        job_logger.log_cancelled(handle.job_id, attempts)
        return PollOutcome(
            state=PollState.CANCELLED,
            failure=JobFailure(
                job_id=handle.job_id,
                error="Polling cancelled",
                kind=ErrorKind.CANCELLED,
                attempts=attempts
            ),
            attempts=attempts
        )

    def _cancelled_group(self, handles: Dict[str, JobHandle], rounds: int) -> PollOutcome:
        for handle in handles.values():
            job_logger.log_cancelled(handle.job_id, rounds)
        return PollOutcome(
            state=PollState.CANCELLED,
            failure=JobFailure(
                job_id=",".join(h.job_id for h in handles.values()),
                error="Polling cancelled",
                kind=ErrorKind.CANCELLED,
                attempts=rounds
            ),
            attempts=rounds
        )

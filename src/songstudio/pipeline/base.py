"""
Stage Controller Foundation
Stage transitions, job execution with polling, asset promotion and the
nested per-section recording loop shared by every flow
"""

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, Union

import httpx
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from ..core.config import get_settings
from ..core.logging import job_logger, pipeline_logger
from ..core.result import Result, ErrorKind
from ..database.repositories import ProviderJobRepository, RepositoryError
from ..database.schemas import ProviderJobCreate
from ..jobs.base import BaseJobClient, JobHandle
from ..jobs.kits import VocalCleanupClient
from ..jobs.poller import CancellationToken, JobFailure, JobPoller, PollOutcome, PollState
from ..jobs.replicate import StructureAnalyzerClient, VocalSeparatorClient, VoiceEnhancerClient
from ..jobs.roex import MixMasterClient
from ..jobs.suno import InstrumentalGeneratorClient, IntroOutroGeneratorClient
from ..storage.gateway import StorageCategory, StorageGateway, build_storage_path
from .state import (
    FlowMode,
    ProjectData,
    ProjectStatus,
    Section,
    SectionRecording,
    SessionContext,
    all_recorded
)
from .store import ProjectStateStore

settings = get_settings()

SuccessCallback = Callable[[JobHandle, Dict[str, str]], Awaitable[Any]]
FailureCallback = Callable[[JobFailure], Awaitable[Any]]


def job_inputs(params: Dict[str, Any]) -> Dict[str, Any]:
    """Scalar start parameters, as recorded on the provider job audit row"""
    return {k: v for k, v in params.items() if isinstance(v, (str, int, float, bool))}


class StageError(BaseModel):
    """Failure surfaced to the user; the stage it happened in is unchanged"""
    mode: FlowMode
    stage: str
    message: str
    kind: ErrorKind
    job_id: Optional[str] = None

    @property
    def retryable(self) -> bool:
        return self.kind != ErrorKind.INPUT


class ProviderClients:
    """Job clients used by the flows, sharing one HTTP client"""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        separator: VocalSeparatorClient = None,
        analyzer: StructureAnalyzerClient = None,
        enhancer: VoiceEnhancerClient = None,
        instrumental: InstrumentalGeneratorClient = None,
        intro_outro: IntroOutroGeneratorClient = None,
        mixer: MixMasterClient = None,
        cleanup: VocalCleanupClient = None
    ):
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.HTTP_TIMEOUT_SECONDS)
        )
        self.separator = separator or VocalSeparatorClient(client=self.http_client)
        self.analyzer = analyzer or StructureAnalyzerClient(client=self.http_client)
        self.enhancer = enhancer or VoiceEnhancerClient(client=self.http_client)
        self.instrumental = instrumental or InstrumentalGeneratorClient(client=self.http_client)
        self.intro_outro = intro_outro or IntroOutroGeneratorClient(client=self.http_client)
        self.mixer = mixer or MixMasterClient(client=self.http_client)
        self.cleanup = cleanup or VocalCleanupClient(client=self.http_client)

    async def close(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()


class BaseStageController:
    """
    Owns one project's state for the lifetime of a session.

    Forward UI actions are plain method calls. Processing stages start a
    provider job, poll it to completion and move to the next stage only
    from the success callback. Failures go to `on_error` and leave the
    stage where it was so the action can be retried.
    """

    mode: FlowMode
    stages: Type[Enum]

    # Stages that run work when entered or resumed
    PROCESSING_STAGES: tuple = ()

    # Stages in which section takes are accepted
    RECORDING_STAGES: tuple = ()

    def __init__(
        self,
        project: ProjectData,
        store: ProjectStateStore,
        gateway: StorageGateway,
        clients: Optional[ProviderClients] = None,
        session: Optional[SessionContext] = None,
        on_error: Optional[Callable[[StageError], Any]] = None,
        on_stage_change: Optional[Callable[[str, str], Any]] = None,
        poll_interval: Optional[float] = None,
        retry_backoff: Optional[float] = None
    ):
        if project.mode != self.mode:
            raise ValueError(f"{type(self).__name__} cannot own a {project.mode.value} project")

        self.project = project
        self.store = store
        self.gateway = gateway
        self._owns_clients = clients is None
        self.clients = clients or ProviderClients()
        self.session = session or SessionContext()
        self.on_error = on_error
        self.on_stage_change = on_stage_change
        self.poll_interval = poll_interval
        self.retry_backoff = settings.START_RETRY_BACKOFF_SECONDS if retry_backoff is None else retry_backoff

        self.last_error: Optional[StageError] = None
        self._token = CancellationToken()
        self._tasks: List[asyncio.Task] = []

    # Stage bookkeeping

    @property
    def stage(self) -> str:
        return self.project.stage

    @property
    def sections(self) -> List[Section]:
        return self.project.sections

    @property
    def current_section_index(self) -> int:
        return self.project.flow.current_section_index

    @property
    def project_id(self) -> Optional[str]:
        return str(self.project.project_id) if self.project.project_id else None

    def _is_stage(self, *stages: Enum) -> bool:
        return self.project.flow.stage in stages

    async def _transition(self, stage: Union[Enum, str], status: ProjectStatus = None) -> Result:
        """
        Move to `stage` and persist the whole document.

        A failed save puts the previous stage back; callers stop on an
        unsuccessful result.
        """
        previous_stage = self.project.flow.stage
        previous_status = self.project.status
        previous = self.stage
        self.project.flow.stage = self.stages(stage)

        saved = await self.store.save(self.project, status)
        if not saved.success:
            self.project.flow.stage = previous_stage
            self.project.status = previous_status
            await self._report(saved.error, saved.kind)
            return saved

        pipeline_logger.log_transition(self.mode.value, previous, self.stage, self.project_id)
        if self.on_stage_change is not None:
            result = self.on_stage_change(previous, self.stage)
            if asyncio.iscoroutine(result):
                await result
        return saved

    async def _persist(self) -> Result:
        saved = await self.store.save(self.project)
        if not saved.success:
            await self._report(saved.error, saved.kind)
        return saved

    async def _report(self, message: str, kind: ErrorKind, job_id: Optional[str] = None) -> None:
        error = StageError(
            mode=self.mode,
            stage=self.stage,
            message=message,
            kind=kind or ErrorKind.PROVIDER,
            job_id=job_id
        )
        self.last_error = error
        pipeline_logger.log_stage_error(self.mode.value, self.stage, message, error.kind.value, self.project_id)

        if self.on_error is not None:
            result = self.on_error(error)
            if asyncio.iscoroutine(result):
                await result

    # Lifecycle

    async def start(self) -> Result:
        """Persist a new project or re-enter a resumed one"""
        if self.project.project_id is None:
            return await self._persist()

        if self.session.is_resuming:
            pipeline_logger.log_resume(self.mode.value, self.stage, self.project_id)
            if self.project.flow.stage in self.PROCESSING_STAGES:
                await self.run_stage()
        return Result.ok(self.project.project_id)

    async def run_stage(self) -> None:
        """Run the work attached to the current stage, if any"""
        handler = getattr(self, f"_run_{self.project.flow.stage.name.lower()}", None)
        if handler is not None:
            await handler()

    def spawn(self, coro: Awaitable) -> asyncio.Task:
        """Run a stage in the background; `close()` waits for it"""
        task = asyncio.ensure_future(coro)
        self._tasks.append(task)
        task.add_done_callback(lambda t: self._tasks.remove(t) if t in self._tasks else None)
        return task

    def cancel(self) -> None:
        self._token.cancel()

    async def close(self) -> None:
        """Stop polling and wait for in-flight work; persisted state stays valid"""
        self._token.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self._owns_clients:
            await self.clients.close()

    async def _advance(self, stage: Union[Enum, str]) -> bool:
        """Transition and run the new stage's work; False when the save failed"""
        if not (await self._transition(stage)).success:
            return False
        await self.run_stage()
        return True

    def _supersede(self) -> CancellationToken:
        """New token for a new job; the one it replaces stops polling"""
        self._token.cancel()
        self._token = CancellationToken()
        return self._token

    # Jobs

    def _poller(self, client: BaseJobClient, interval: float = None, max_attempts: int = None) -> JobPoller:
        return JobPoller(
            client,
            interval=self.poll_interval if self.poll_interval is not None else interval,
            max_attempts=max_attempts
        )

    async def _start_job(
        self,
        client: BaseJobClient,
        params: Dict[str, Any],
        token: CancellationToken
    ) -> Result[JobHandle]:
        """Start a job, retrying only network-class failures"""
        attempt = 0
        while True:
            result = await client.start(**params)
            if result.success or not (result.kind and result.kind.retryable):
                return result
            if attempt >= settings.START_MAX_RETRIES:
                return result

            attempt += 1
            job_logger.log_transient_error(f"{client.provider}:start", result.error, attempt, attempt)
            if await token.sleep(self.retry_backoff * attempt):
                return Result.err("Job start cancelled", ErrorKind.CANCELLED)

    async def _run_job(
        self,
        client: BaseJobClient,
        role: str,
        params: Dict[str, Any],
        on_succeeded: SuccessCallback,
        on_failed: Optional[FailureCallback] = None,
        interval: float = None,
        max_attempts: int = None
    ) -> PollOutcome:
        """
        Start one job and poll it to a terminal state.

        `on_succeeded(handle, outputs)` performs the stage advance. Failures
        are reported through `on_error` unless `on_failed` handles them.
        """
        token = self._supersede()

        started = await self._start_job(client, params, token)
        if not started.success:
            failure = JobFailure(job_id="", error=started.error, kind=started.kind or ErrorKind.PROVIDER)
            return await self._start_failed(failure, on_failed)

        handle = started.data
        await self._audit_start(handle, role, params)

        async def succeeded(outputs: Dict[str, str]) -> None:
            await self._audit(handle, "succeeded", output_url=next(iter(outputs.values()), None))
            await on_succeeded(handle, outputs)

        async def failed(failure: JobFailure) -> None:
            status = "timed_out" if failure.kind == ErrorKind.TIMEOUT else "failed"
            await self._audit(handle, status, attempts=failure.attempts, error=failure.error)
            if on_failed is not None:
                await on_failed(failure)
            else:
                await self._report(failure.error, failure.kind, failure.job_id)

        outcome = await self._poller(client, interval, max_attempts).poll_until_done(
            handle, succeeded, failed, token=token
        )
        if outcome.state == PollState.CANCELLED:
            await self._audit(handle, "cancelled", attempts=outcome.attempts)
        return outcome

    async def _run_group(
        self,
        client: BaseJobClient,
        jobs: Dict[str, Dict[str, Any]],
        on_all_succeeded: Callable[[Dict[str, JobHandle], Dict[str, Dict[str, str]]], Awaitable[Any]],
        interval: float = None,
        max_attempts: int = None
    ) -> PollOutcome:
        """
        Start independent jobs together and wait for all of them.

        Keys double as audit roles. The continuation fires once, after the
        last job succeeds; the first failure fails the group.
        """
        token = self._supersede()

        keys = list(jobs)
        results = await asyncio.gather(*(self._start_job(client, jobs[key], token) for key in keys))

        handles: Dict[str, JobHandle] = {}
        for key, result in zip(keys, results):
            if result.success:
                handles[key] = result.data
                await self._audit_start(result.data, key, jobs[key])

        failed_start = next(
            ((key, result) for key, result in zip(keys, results) if not result.success), None
        )
        if failed_start is not None:
            key, result = failed_start
            # Siblings already submitted are abandoned
            for handle in handles.values():
                await self._audit(handle, "cancelled")
            failure = JobFailure(job_id="", error=result.error, kind=result.kind or ErrorKind.PROVIDER, key=key)
            return await self._start_failed(failure, None)

        async def all_succeeded(outputs: Dict[str, Dict[str, str]]) -> None:
            for key, handle in handles.items():
                await self._audit(handle, "succeeded", output_url=next(iter(outputs[key].values()), None))
            await on_all_succeeded(handles, outputs)

        async def failed(failure: JobFailure) -> None:
            status = "timed_out" if failure.kind == ErrorKind.TIMEOUT else "failed"
            for key, handle in handles.items():
                await self._audit(
                    handle,
                    status if key == failure.key else "cancelled",
                    attempts=failure.attempts,
                    error=failure.error if key == failure.key else None
                )
            await self._report(failure.error, failure.kind, failure.job_id)

        outcome = await self._poller(client, interval, max_attempts).poll_group(
            handles, all_succeeded, failed, token=token
        )
        if outcome.state == PollState.CANCELLED:
            for handle in handles.values():
                await self._audit(handle, "cancelled", attempts=outcome.attempts)
        return outcome

    async def _start_failed(self, failure: JobFailure, on_failed: Optional[FailureCallback]) -> PollOutcome:
        if failure.kind == ErrorKind.CANCELLED:
            return PollOutcome(state=PollState.CANCELLED, failure=failure)

        job_logger.log_job_failed(failure.job_id or "unstarted", failure.error, failure.kind.value, 0)
        if on_failed is not None:
            await on_failed(failure)
        else:
            await self._report(failure.error, failure.kind)
        return PollOutcome(state=PollState.FAILED, failure=failure)

    # Provider job audit trail

    async def _audit_start(self, handle: JobHandle, role: str, params: Dict[str, Any]) -> None:
        try:
            async with self.store.db.get_session() as session:
                await ProviderJobRepository(session).create(ProviderJobCreate(
                    provider=handle.provider,
                    kind=handle.kind.value,
                    job_id=handle.job_id,
                    project_id=self.project.project_id,
                    user_id=self.project.user_id,
                    role=role,
                    input_parameters=job_inputs(params)
                ))
        except (RepositoryError, SQLAlchemyError) as e:
            pipeline_logger.logger.warning("Provider job audit failed", job_id=handle.job_id, error=str(e))

    async def _audit(
        self,
        handle: JobHandle,
        status: str,
        attempts: Optional[int] = None,
        output_url: Optional[str] = None,
        error: Optional[str] = None
    ) -> None:
        try:
            async with self.store.db.get_session() as session:
                await ProviderJobRepository(session).mark(
                    handle.provider, handle.job_id, status,
                    attempts=attempts, output_url=output_url, error_message=error
                )
        except (RepositoryError, SQLAlchemyError) as e:
            pipeline_logger.logger.warning("Provider job audit failed", job_id=handle.job_id, error=str(e))

    async def _consume_recovered(self, role: str, params: Dict[str, Any]) -> Optional[str]:
        """
        Output of a job for `role` that finished after its poll loop gave up.

        Only a job started with the same inputs as `params` counts; a late
        result for other inputs (another song, another style) stays unused.
        """
        if self.project.project_id is None:
            return None

        expected = job_inputs(params)
        try:
            async with self.store.db.get_session() as session:
                repo = ProviderJobRepository(session)
                recovered = await repo.find_recovered(self.project.project_id, role)
                job = next(
                    (job for job in recovered if job.output_url and (job.input_parameters or {}) == expected),
                    None
                )
                if job is None:
                    return None
                await repo.mark(job.provider, job.job_id, "consumed")
                provider, job_id, url = job.provider, job.job_id, job.output_url
        except (RepositoryError, SQLAlchemyError) as e:
            pipeline_logger.logger.warning("Recovered job lookup failed", role=role, error=str(e))
            return None

        pipeline_logger.log_recovered_asset(self.project_id, role, job_id, url)
        return await self._promote_url(url, self._category_for(role), role, f"{provider}:{job_id}")

    def _category_for(self, role: str) -> str:
        return StorageCategory.AI_GENERATED

    # Assets

    async def _promote(
        self,
        handle: JobHandle,
        url: str,
        category: str,
        label: str
    ) -> str:
        """Re-host a provider output; the provider URL is kept if that fails"""
        return await self._promote_url(url, category, label, f"{handle.artifact_key}:{label}")

    async def _promote_url(self, url: str, category: str, label: str, artifact_key: str) -> str:
        asset = await self.gateway.promote(
            url,
            category,
            str(self.project.user_id) if self.project.user_id else None,
            self.project.project_name,
            label,
            artifact_key=artifact_key
        )
        return asset.url

    async def _store_audio(
        self,
        audio: Union[bytes, str],
        category: str,
        label: str,
        content_type: str = "audio/wav",
        artifact_key: Optional[str] = None
    ) -> Result[str]:
        """Upload a local take, or accept one that is already hosted"""
        if isinstance(audio, str):
            if not audio:
                return Result.err("Missing audio URL", ErrorKind.INPUT)
            return Result.ok(audio)

        if not audio:
            return Result.err("Recording is empty", ErrorKind.INPUT)

        ext = "mp3" if content_type in ("audio/mpeg", "audio/mp3") else content_type.split("/")[-1].replace("x-", "")
        path = build_storage_path(
            category,
            str(self.project.user_id) if self.project.user_id else None,
            self.project.project_name,
            label,
            ext or "wav",
            artifact_key=artifact_key
        )
        return await self.gateway.upload(audio, content_type, path)

    # Nested recording loop

    TAKE_FIELD = "user_recording_url"

    def _take_field(self) -> str:
        return self.TAKE_FIELD

    def _next_unrecorded(self, after: int) -> int:
        field = self._take_field()
        for index in list(range(after + 1, len(self.sections))) + list(range(0, after + 1)):
            section = self.sections[index]
            if section.recordable and not getattr(section, field):
                return index
        return after

    def _check_take(self, index: int) -> Optional[Result]:
        if not self._is_stage(*self.RECORDING_STAGES):
            return Result.err(f"Cannot record during {self.stage}", ErrorKind.INPUT)
        if not 0 <= index < len(self.sections):
            return Result.err(f"No section at index {index}", ErrorKind.INPUT)
        return None

    async def _process_take(self, index: int, take_url: str) -> str:
        return take_url

    def select_section(self, index: int) -> Result[Section]:
        """Revisit a section without leaving the current stage"""
        if not 0 <= index < len(self.sections):
            return Result.err(f"No section at index {index}", ErrorKind.INPUT)
        self.project.flow.current_section_index = index
        return Result.ok(self.sections[index])

    async def record_section(
        self,
        index: int,
        audio: Union[bytes, str],
        content_type: str = "audio/wav"
    ) -> Result[Section]:
        """Store a take for one section, replacing the previous one"""
        rejected = self._check_take(index)
        if rejected is not None:
            return rejected

        section = self.sections[index]
        stored = await self._store_audio(
            audio, StorageCategory.RECORDINGS, f"section_{index}", content_type
        )
        if not stored.success:
            await self._report(stored.error, stored.kind)
            return stored.propagate()

        take_url = await self._process_take(index, stored.data)
        setattr(section, self._take_field(), take_url)
        self.project.flow.current_section_index = self._next_unrecorded(index)
        await self._persist()
        return Result.ok(section)

    async def add_section_layer(
        self,
        index: int,
        audio: Union[bytes, str],
        label: Optional[str] = None,
        content_type: str = "audio/wav"
    ) -> Result[Section]:
        """Add an extra take (harmony, double) on top of a section"""
        rejected = self._check_take(index)
        if rejected is not None:
            return rejected

        section = self.sections[index]
        stored = await self._store_audio(
            audio, StorageCategory.RECORDINGS, f"section_{index}_layer_{len(section.recordings) + 1}", content_type
        )
        if not stored.success:
            await self._report(stored.error, stored.kind)
            return stored.propagate()

        section.recordings.append(SectionRecording(audio_url=stored.data, label=label))
        await self._persist()
        return Result.ok(section)

    # Completion gate

    def can_finish(self) -> bool:
        return all_recorded(self.sections, self.stage)

    async def finish(self) -> bool:
        """Advance past the recording stage; a no-op until every section is recorded"""
        if not self.can_finish():
            pipeline_logger.logger.info(
                "Finish blocked, sections incomplete",
                mode=self.mode.value,
                stage=self.stage,
                project_id=self.project_id
            )
            return False
        return await self._finish()

    async def _finish(self) -> bool:
        raise NotImplementedError

    async def _complete(self, audio_url: str, duration: Optional[float] = None) -> bool:
        """Link the final asset and mark the project completed"""
        completed = await self.store.complete(
            self.project.project_id, self.project.user_id, audio_url, duration
        )
        if not completed.success:
            await self._report(completed.error, completed.kind)
            return False

        self.project.status = ProjectStatus.COMPLETED
        pipeline_logger.log_flow_completed(self.mode.value, self.project_id, audio_url)
        return True

"""
SongStudio Provider Webhook Routes
Callbacks from Suno and RoEx, reconciled against the provider job audit trail
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError

from ...core.logging import job_logger
from ...database.connection import DatabaseManager, database_manager
from ...database.repositories.base import RepositoryError
from ...database.repositories.provider_job_repository import ProviderJobRepository
from ...database.schemas import WebhookAck
from ...jobs.base import JobState, JobStatus
from ...jobs.roex import MixMasterClient
from ...jobs.suno import SunoTaskClient

router = APIRouter()

# Local poll loop gave up on these; a late success is kept for resume
ABANDONED_STATUSES = {"timed_out", "cancelled", "failed"}

ROEX_OUTPUT_KEYS = ("preview_mix_url", "result_url", "output_url", "mastered_track_url", "mixed_track_url")


def get_database() -> DatabaseManager:
    """Database dependency, overridable in tests"""
    return database_manager


def parse_suno_callback(body: Dict[str, Any]) -> JobStatus:
    """
    Interpret a Suno callback.

    Only the `complete` callback carries final audio; `text` and `first`
    are progress notices. Of the returned tracks the first with an
    `audio_url` wins.
    """
    if body.get("code") != 200:
        return JobStatus.failed(body.get("msg") or f"Suno callback error: {body.get('code')}")

    data = body.get("data") or {}
    callback_type = data.get("callbackType")

    if callback_type == "error":
        return JobStatus.failed(body.get("msg") or "Suno generation failed")
    if callback_type != "complete":
        return JobStatus.processing(callback_type)

    tracks = data.get("data") or []
    for track in tracks:
        if track.get("audio_url"):
            return JobStatus.succeeded({"audio": track["audio_url"]})

    return JobStatus.failed("Suno callback completed without audio")


def parse_roex_webhook(body: Dict[str, Any]) -> JobStatus:
    """Interpret a RoEx webhook; falls back to the retrieve-response layout"""
    if body.get("error"):
        return JobStatus.failed(body.get("message") or "Processing failed")

    for key in ROEX_OUTPUT_KEYS:
        if body.get(key):
            return JobStatus.succeeded({"mix": body[key]})

    return MixMasterClient.parse_result(body)


async def reconcile(
    db: DatabaseManager,
    provider: str,
    job_id: Optional[str],
    status: JobStatus
) -> WebhookAck:
    """
    Apply a callback to the audit row of a job.

    Success for a job still being polled marks it succeeded; success for
    a job whose poll loop already gave up marks it recovered. Project
    state is never touched here.
    """
    if not job_id:
        job_logger.log_webhook(provider, "", status.state.value, "missing_job_id")
        return WebhookAck(error="No task id")

    output_url = next(iter(status.outputs.values()), None)

    try:
        async with db.get_session() as session:
            repository = ProviderJobRepository(session)
            job = await repository.get_by_job_id(provider, job_id)

            if job is None:
                outcome = "unknown_job"
            elif status.state == JobState.SUCCEEDED and job.status == "processing":
                await repository.mark(provider, job_id, "succeeded", output_url=output_url)
                outcome = "succeeded"
            elif status.state == JobState.SUCCEEDED and job.status in ABANDONED_STATUSES:
                await repository.mark(provider, job_id, "recovered", output_url=output_url)
                outcome = "recovered"
            elif status.state == JobState.FAILED and job.status == "processing":
                await repository.mark(provider, job_id, "failed", error_message=status.reason)
                outcome = "failed"
            else:
                outcome = "ignored"

    except (RepositoryError, SQLAlchemyError) as e:
        # Providers do not retry on errors; acknowledge and keep the log
        job_logger.logger.error("Webhook reconciliation failed", provider=provider, job_id=job_id, error=str(e))
        return WebhookAck(job_id=job_id, status=status.state.value, error=str(e))

    job_logger.log_webhook(provider, job_id, status.state.value, outcome)
    return WebhookAck(job_id=job_id, status=outcome, error=status.reason)


@router.post("/suno", response_model=WebhookAck)
async def suno_callback(
    body: Dict[str, Any],
    db: DatabaseManager = Depends(get_database)
) -> WebhookAck:
    """Suno generation callback"""
    status = parse_suno_callback(body)
    job_id = (body.get("data") or {}).get("task_id")

    if body.get("code") != 200 and not job_id:
        job_logger.log_webhook(SunoTaskClient.provider, "", status.state.value, "provider_error")
        return WebhookAck(error=status.reason)

    return await reconcile(db, SunoTaskClient.provider, job_id, status)


@router.post("/roex", response_model=WebhookAck)
async def roex_webhook(
    body: Dict[str, Any],
    db: DatabaseManager = Depends(get_database)
) -> WebhookAck:
    """RoEx mix/master webhook"""
    job_id = body.get("multitrack_task_id") or body.get("task_id") or body.get("mastering_task_id")
    return await reconcile(db, MixMasterClient.provider, job_id, parse_roex_webhook(body))

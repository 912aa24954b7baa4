"""
SongStudio Logging Configuration
Structured logging setup with file rotation and pipeline/job event loggers
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Optional

import structlog
from pythonjsonlogger import jsonlogger

from .config import get_settings

settings = get_settings()


def setup_logging() -> logging.Logger:
    """Set up structured logging for SongStudio"""

    # Create logs directory
    log_dir = Path(settings.LOG_FILE_PATH).parent
    log_dir.mkdir(parents=True, exist_ok=True)

    # Configure standard library logging
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper()),
        format=settings.LOG_FORMAT,
        handlers=[]  # Will be set below
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)

    if settings.is_development:
        # Colored console formatter for development
        console_formatter = logging.Formatter(
            '\033[92m%(asctime)s\033[0m - '
            '\033[94m%(name)s\033[0m - '
            '\033[%(levelno)s;1m%(levelname)s\033[0m - '
            '%(message)s',
            datefmt='%H:%M:%S'
        )
    else:
        # JSON formatter for production
        console_formatter = jsonlogger.JsonFormatter(
            '%(asctime)s %(name)s %(levelname)s %(message)s'
        )

    console_handler.setFormatter(console_formatter)
    root_logger.addHandler(console_handler)

    # File handler with rotation
    file_handler = logging.handlers.RotatingFileHandler(
        settings.LOG_FILE_PATH,
        maxBytes=settings.LOG_MAX_SIZE,
        backupCount=settings.LOG_BACKUP_COUNT,
        encoding='utf-8'
    )
    file_handler.setLevel(logging.DEBUG)

    file_formatter = jsonlogger.JsonFormatter(
        '%(asctime)s %(name)s %(levelname)s %(pathname)s %(lineno)d %(funcName)s %(message)s'
    )
    file_handler.setFormatter(file_formatter)
    root_logger.addHandler(file_handler)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if not settings.is_development
            else structlog.dev.ConsoleRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Adjust third-party library log levels
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("fastapi").setLevel(logging.INFO)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    logging.getLogger("songstudio.jobs").setLevel(logging.DEBUG)
    logging.getLogger("songstudio.pipeline").setLevel(logging.INFO)
    logging.getLogger("songstudio.storage").setLevel(logging.INFO)

    logger = logging.getLogger("songstudio")
    logger.info(f"Logging configured - Level: {settings.LOG_LEVEL}")

    return logger


class JobLogger:
    """Specialized logger for external provider jobs"""

    def __init__(self):
        self.logger = structlog.get_logger("songstudio.jobs")

    def log_job_started(
        self,
        provider: str,
        kind: str,
        job_id: str,
        **kwargs: Any
    ) -> None:
        """Log provider job submission"""
        self.logger.info(
            "Provider job started",
            provider=provider,
            kind=kind,
            job_id=job_id,
            **kwargs
        )

    def log_poll(
        self,
        job_id: str,
        attempt: int,
        state: str,
        progress: Optional[str] = None
    ) -> None:
        """Log a single status check"""
        self.logger.debug(
            "Provider job polled",
            job_id=job_id,
            attempt=attempt,
            state=state,
            progress=progress
        )

    def log_job_succeeded(
        self,
        job_id: str,
        attempts: int,
        outputs: dict,
        **kwargs: Any
    ) -> None:
        """Log provider job success"""
        self.logger.info(
            "Provider job succeeded",
            job_id=job_id,
            attempts=attempts,
            outputs=list(outputs.keys()),
            **kwargs
        )

    def log_job_failed(
        self,
        job_id: str,
        error: str,
        kind: str = None,
        attempts: int = None
    ) -> None:
        """Log provider job failure (provider-reported, timeout or start error)"""
        self.logger.error(
            "Provider job failed",
            job_id=job_id,
            error=error,
            error_kind=kind,
            attempts=attempts
        )

    def log_transient_error(
        self,
        job_id: str,
        error: str,
        attempt: int,
        consecutive: int
    ) -> None:
        """Log a recoverable network error during polling or start"""
        self.logger.warning(
            "Transient provider error",
            job_id=job_id,
            error=error,
            attempt=attempt,
            consecutive_errors=consecutive
        )

    def log_cancelled(self, job_id: str, attempts: int) -> None:
        """Log cancellation of a polling loop"""
        self.logger.info(
            "Provider job polling cancelled",
            job_id=job_id,
            attempts=attempts
        )

    def log_webhook(self, provider: str, job_id: str, status: str, outcome: str) -> None:
        """Log a provider callback and what was done with it"""
        self.logger.info(
            "Provider webhook received",
            provider=provider,
            job_id=job_id,
            status=status,
            outcome=outcome
        )


class PipelineLogger:
    """Specialized logger for stage controllers"""

    def __init__(self):
        self.logger = structlog.get_logger("songstudio.pipeline")

    def log_transition(
        self,
        mode: str,
        from_stage: str,
        to_stage: str,
        project_id: str = None
    ) -> None:
        """Log a stage transition"""
        self.logger.info(
            "Stage transition",
            mode=mode,
            from_stage=from_stage,
            to_stage=to_stage,
            project_id=project_id
        )

    def log_stage_error(
        self,
        mode: str,
        stage: str,
        error: str,
        kind: str = None,
        project_id: str = None
    ) -> None:
        """Log a stage failure surfaced to the user"""
        self.logger.error(
            "Stage failed",
            mode=mode,
            stage=stage,
            error=error,
            error_kind=kind,
            project_id=project_id
        )

    def log_resume(self, mode: str, stage: str, project_id: str) -> None:
        """Log a resumed session"""
        self.logger.info(
            "Resuming project",
            mode=mode,
            stage=stage,
            project_id=project_id
        )

    def log_flow_completed(self, mode: str, project_id: str, audio_url: str) -> None:
        """Log completion of a flow"""
        self.logger.info(
            "Flow completed",
            mode=mode,
            project_id=project_id,
            audio_url=audio_url
        )

    def log_state_saved(
        self,
        project_id: str,
        operation: str,
        stage: str = None,
        status: str = None
    ) -> None:
        """Log a write of the project document (last writer wins)"""
        self.logger.info(
            "Project state saved",
            project_id=project_id,
            operation=operation,
            stage=stage,
            status=status
        )

    def log_stage_step_back(self, project_id: str, persisted: str, resolved: str) -> None:
        """Log a resumed stage moved back because its inputs are missing"""
        self.logger.warning(
            "Persisted stage missing prerequisites",
            project_id=project_id,
            persisted_stage=persisted,
            resolved_stage=resolved
        )

    def log_recovered_asset(self, project_id: str, role: str, job_id: str, url: str) -> None:
        """Log a late provider result absorbed on resume"""
        self.logger.info(
            "Recovered late job result",
            project_id=project_id,
            role=role,
            job_id=job_id,
            url=url
        )


class AudioProcessingLogger:
    """Specialized logger for audio merge operations"""

    def __init__(self):
        self.logger = structlog.get_logger("songstudio.audio")

    def log_processing_start(
        self,
        operation: str,
        file_path: str = None,
        **kwargs: Any
    ) -> None:
        """Log start of audio processing operation"""
        self.logger.info(
            "Audio processing started",
            operation=operation,
            file_path=file_path,
            **kwargs
        )

    def log_processing_complete(
        self,
        operation: str,
        duration_ms: float,
        file_path: str = None,
        **kwargs: Any
    ) -> None:
        """Log completion of audio processing operation"""
        self.logger.info(
            "Audio processing completed",
            operation=operation,
            duration_ms=duration_ms,
            file_path=file_path,
            **kwargs
        )

    def log_processing_error(
        self,
        operation: str,
        error: str,
        file_path: str = None,
        **kwargs: Any
    ) -> None:
        """Log audio processing error"""
        self.logger.error(
            "Audio processing failed",
            operation=operation,
            error=error,
            file_path=file_path,
            **kwargs
        )

    def log_segment_skipped(self, url: str, index: int, error: str) -> None:
        """Log a segment dropped from a merge"""
        self.logger.warning(
            "Audio segment skipped",
            url=url,
            index=index,
            error=error
        )


class StorageLogger:
    """Specialized logger for object storage operations"""

    def __init__(self):
        self.logger = structlog.get_logger("songstudio.storage")

    def log_upload(self, path: str, size_bytes: int, content_type: str) -> None:
        """Log an object upload"""
        self.logger.info(
            "Object uploaded",
            path=path,
            size_bytes=size_bytes,
            content_type=content_type
        )

    def log_download(self, url: str, size_bytes: int) -> None:
        """Log an object download"""
        self.logger.debug(
            "Object downloaded",
            url=url,
            size_bytes=size_bytes
        )

    def log_promotion_fallback(self, provider_url: str, error: str) -> None:
        """Log a provider URL kept because re-hosting failed"""
        self.logger.warning(
            "Re-hosting failed, keeping transient provider URL",
            provider_url=provider_url,
            error=error
        )


class PerformanceLogger:
    """Logger for performance monitoring"""

    def __init__(self):
        self.logger = structlog.get_logger("songstudio.performance")

    def log_database_query(
        self,
        query: str,
        duration_ms: float,
        rows_affected: int = None
    ) -> None:
        """Log database query performance"""
        self.logger.debug(
            "Database query",
            query=query[:100] + "..." if len(query) > 100 else query,
            duration_ms=duration_ms,
            rows_affected=rows_affected
        )


# Create global logger instances
job_logger = JobLogger()
pipeline_logger = PipelineLogger()
audio_logger = AudioProcessingLogger()
storage_logger = StorageLogger()
performance_logger = PerformanceLogger()

# Export for convenience
__all__ = [
    "setup_logging",
    "JobLogger",
    "PipelineLogger",
    "AudioProcessingLogger",
    "StorageLogger",
    "PerformanceLogger",
    "job_logger",
    "pipeline_logger",
    "audio_logger",
    "storage_logger",
    "performance_logger"
]

"""Runtime configuration for the task orchestration engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class OrchestratorSettings:
    """State machine driver, retry and inference dispatch settings."""

    batch_size: int = 10
    max_retries: int = 3
    retry_base_seconds: float = 5.0
    poll_interval_seconds: float = 5.0
    inference_timeout_seconds: float = 300.0
    dispatch_grace_seconds: float = 60.0
    max_callback_payload_bytes: int = 1024 * 1024
    dispatcher_threads: int = 4
    deferred_upload: bool = False
    retention_hours: int = 24


@dataclass(slots=True)
class CreditSettings:
    """Per-task credit pricing used at task acceptance."""

    photography_credits: int = 1
    fitting_credits: int = 1
    avatar_credits: int = 1


@dataclass(slots=True)
class StorageSettings:
    """Local artifact storage settings."""

    media_root: Path = Path(".photo_studio_media")


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".photo_studio.db")
    sqlite_busy_timeout_ms: int = 5000
    log_level: str = "INFO"
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    credits: CreditSettings = field(default_factory=CreditSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("PHOTO_STUDIO_DB_PATH", ".photo_studio.db")),
            sqlite_busy_timeout_ms=int(os.getenv("PHOTO_STUDIO_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("PHOTO_STUDIO_LOG_LEVEL", "INFO"),
            orchestrator=OrchestratorSettings(
                batch_size=int(os.getenv("PHOTO_STUDIO_BATCH_SIZE", "10")),
                max_retries=int(os.getenv("PHOTO_STUDIO_MAX_RETRIES", "3")),
                retry_base_seconds=float(os.getenv("PHOTO_STUDIO_RETRY_BASE_SECONDS", "5")),
                poll_interval_seconds=float(os.getenv("PHOTO_STUDIO_POLL_INTERVAL_SECONDS", "5")),
                inference_timeout_seconds=float(
                    os.getenv("PHOTO_STUDIO_INFERENCE_TIMEOUT_SECONDS", "300"),
                ),
                dispatch_grace_seconds=float(
                    os.getenv("PHOTO_STUDIO_DISPATCH_GRACE_SECONDS", "60"),
                ),
                max_callback_payload_bytes=int(
                    os.getenv("PHOTO_STUDIO_MAX_CALLBACK_PAYLOAD_BYTES", str(1024 * 1024)),
                ),
                dispatcher_threads=int(os.getenv("PHOTO_STUDIO_DISPATCHER_THREADS", "4")),
                deferred_upload=_env_bool("PHOTO_STUDIO_DEFERRED_UPLOAD", default=False),
                retention_hours=int(os.getenv("PHOTO_STUDIO_RETENTION_HOURS", "24")),
            ),
            credits=CreditSettings(
                photography_credits=int(os.getenv("PHOTO_STUDIO_PHOTOGRAPHY_CREDITS", "1")),
                fitting_credits=int(os.getenv("PHOTO_STUDIO_FITTING_CREDITS", "1")),
                avatar_credits=int(os.getenv("PHOTO_STUDIO_AVATAR_CREDITS", "1")),
            ),
            storage=StorageSettings(
                media_root=Path(os.getenv("PHOTO_STUDIO_MEDIA_ROOT", ".photo_studio_media")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the engine cannot run with."""

        orchestrator = self.orchestrator
        if orchestrator.batch_size <= 0:
            raise ValueError("PHOTO_STUDIO_BATCH_SIZE must be > 0.")
        if orchestrator.max_retries <= 0:
            raise ValueError("PHOTO_STUDIO_MAX_RETRIES must be > 0.")
        if orchestrator.retry_base_seconds < 0:
            raise ValueError("PHOTO_STUDIO_RETRY_BASE_SECONDS must be >= 0.")
        if orchestrator.inference_timeout_seconds <= 0:
            raise ValueError("PHOTO_STUDIO_INFERENCE_TIMEOUT_SECONDS must be > 0.")
        if orchestrator.max_callback_payload_bytes <= 0:
            raise ValueError("PHOTO_STUDIO_MAX_CALLBACK_PAYLOAD_BYTES must be > 0.")
        if orchestrator.dispatcher_threads <= 0:
            raise ValueError("PHOTO_STUDIO_DISPATCHER_THREADS must be > 0.")
        if orchestrator.retention_hours < 0:
            raise ValueError("PHOTO_STUDIO_RETENTION_HOURS must be >= 0.")
        for name in ("photography_credits", "fitting_credits", "avatar_credits"):
            if getattr(self.credits, name) < 0:
                raise ValueError(f"PHOTO_STUDIO_{name.upper()} must be >= 0.")

    def credits_for(self, task_type: str) -> int:
        """Default credit price of one generated image for a task type."""

        prices = {
            "photography": self.credits.photography_credits,
            "fitting": self.credits.fitting_credits,
            "avatar": self.credits.avatar_credits,
        }
        if task_type not in prices:
            raise ValueError(f"Unknown task type: {task_type!r}")
        return prices[task_type]


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")

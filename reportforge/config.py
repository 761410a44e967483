from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        env_prefix='REPORTFORGE_',
        case_sensitive=False,
        extra='ignore',
    )

    app_name: str = 'reportforge'
    log_level: str = 'INFO'

    data_dir: Path = Field(default=Path('./data'))

    # Size estimation
    words_per_page: int = 250

    # Routing
    sync_page_threshold: int = 100
    sync_timeout_seconds: float = 60.0

    # Chunking
    max_chunk_pages: int = 50
    # 0 disables the word cap
    max_chunk_words: int = 0
    chunk_concurrency: int = 4

    # Retries and ceilings
    chunk_max_attempts: int = 3
    chunk_retry_backoff_seconds: float = 0.5
    chunk_timeout_seconds: float = 120.0
    job_timeout_seconds: float = 1800.0
    max_job_attempts: int = 3

    # Queue leasing
    lease_seconds: float = 60.0
    heartbeat_interval_seconds: float = 15.0
    worker_poll_interval_seconds: float = 1.0
    worker_concurrency: int = 1
    max_queued_jobs: int = 500
    watchdog_interval_seconds: float = 10.0

    # Submit/watch behavior
    submit_default_wait_seconds: int = 0
    submit_poll_interval_seconds: float = 1.0

    # Artifacts
    default_output_format: str = 'pdf'
    artifact_retention_hours: int = 24 * 14

    # Notifications
    notify_webhook_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            'notify_webhook_url',
            'REPORTFORGE_NOTIFY_WEBHOOK_URL',
            'NOTIFY_WEBHOOK_URL',
        ),
    )
    notify_webhook_secret: str | None = None
    notify_timeout_seconds: float = 10.0

    # HTTP server
    server_host: str = '0.0.0.0'
    server_port: int = 8010

    # PDF export
    pdf_font_name: str = 'Helvetica'
    pdf_title_font_size: int = 15
    pdf_body_font_size: int = 10
    pdf_page_margin: int = 48

    def queue_path(self) -> Path:
        return self.data_dir / 'queue.sqlite3'

    def jobs_dir(self) -> Path:
        return self.data_dir / 'jobs'

    def assessments_dir(self) -> Path:
        return self.data_dir / 'assessments'

    def artifacts_dir(self) -> Path:
        return self.data_dir / 'artifacts'


def prepare_dirs(settings: Settings) -> Settings:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.jobs_dir().mkdir(parents=True, exist_ok=True)
    settings.assessments_dir().mkdir(parents=True, exist_ok=True)
    settings.artifacts_dir().mkdir(parents=True, exist_ok=True)
    return settings


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return prepare_dirs(Settings())

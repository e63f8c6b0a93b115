import os
from dataclasses import dataclass, field
from datetime import timedelta
from dotenv import load_dotenv

from .engine.stages import DEFAULT_STAGE_LABELS

load_dotenv()  # loads .env for local dev


def _csv(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    env: str = os.getenv("ENV", "local")
    service_name: str = os.getenv("SERVICE_NAME", "oppsync")
    database_url: str = os.getenv("DATABASE_URL", "")

    # CRM connection
    ghl_base_url: str = os.getenv("GHL_BASE_URL", "https://services.leadconnectorhq.com")
    ghl_api_version: str = os.getenv("GHL_API_VERSION", "2021-07-28")
    ghl_client_id: str = os.getenv("GHL_CLIENT_ID", "")
    ghl_client_secret: str = os.getenv("GHL_CLIENT_SECRET", "")
    sf_location_id: str = os.getenv("SF_LOCATION_ID", "")
    sf_pipeline_id: str = os.getenv("SF_PIPELINE_ID", "")
    cron_secret: str = os.getenv("SYNC_CRON_SECRET", "")

    # Reconciliation run
    request_delay_ms: int = int(os.getenv("SYNC_REQUEST_DELAY_MS", "50"))
    lead_page_size: int = int(os.getenv("SYNC_LEAD_PAGE_SIZE", "1000"))
    opportunity_page_size: int = int(os.getenv("SYNC_OPPORTUNITY_PAGE_SIZE", "100"))
    max_opportunity_pages: int = int(os.getenv("SYNC_MAX_OPPORTUNITY_PAGES", "50"))
    update_batch_size: int = int(os.getenv("SYNC_UPDATE_BATCH_SIZE", "50"))
    appointment_past_days: int = int(os.getenv("SYNC_APPOINTMENT_PAST_DAYS", "30"))
    appointment_future_days: int = int(os.getenv("SYNC_APPOINTMENT_FUTURE_DAYS", "60"))
    run_timeout_seconds: int = int(os.getenv("SYNC_RUN_TIMEOUT_SECONDS", "900"))
    excluded_location_ids: tuple[str, ...] = field(
        default_factory=lambda: _csv("SYNC_EXCLUDED_LOCATION_IDS")
    )


settings = Settings()


@dataclass(frozen=True)
class ReconcileConfig:
    """Immutable per-run configuration handed to the reconciler."""

    location_id: str
    pipeline_id: str | None = None
    stage_labels: tuple[tuple[str, str], ...] = DEFAULT_STAGE_LABELS
    excluded_location_ids: frozenset[str] = frozenset()
    disqualifying_statuses: frozenset[str] = frozenset({"cancelled", "canceled", "noshow", "no_show", "invalid"})
    disqualifying_stage_keywords: tuple[str, ...] = ("no show", "noshow", "abgesagt", "storniert", "cancel")
    request_interval: timedelta = timedelta(milliseconds=50)
    lead_page_size: int = 1000
    opportunity_page_size: int = 100
    max_opportunity_pages: int = 50
    update_batch_size: int = 50
    appointment_past: timedelta = timedelta(days=30)
    appointment_future: timedelta = timedelta(days=60)

    @classmethod
    def from_settings(cls, s: Settings) -> "ReconcileConfig":
        if not s.sf_location_id:
            raise RuntimeError("SF_LOCATION_ID is not set")
        excluded = frozenset(s.excluded_location_ids) | {s.sf_location_id}
        return cls(
            location_id=s.sf_location_id,
            pipeline_id=s.sf_pipeline_id or None,
            excluded_location_ids=excluded,
            request_interval=timedelta(milliseconds=s.request_delay_ms),
            lead_page_size=s.lead_page_size,
            opportunity_page_size=s.opportunity_page_size,
            max_opportunity_pages=s.max_opportunity_pages,
            update_batch_size=s.update_batch_size,
            appointment_past=timedelta(days=s.appointment_past_days),
            appointment_future=timedelta(days=s.appointment_future_days),
        )

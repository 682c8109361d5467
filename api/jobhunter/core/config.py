from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "jobhunter-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0

    scrape_provider: str = "apify"
    apify_token: str | None = None
    apify_base_url: str = "https://api.apify.com/v2"
    scrape_actor_id: str = "curious_coder/linkedin-jobs-scraper"
    provider_poll_interval_seconds: float = 5.0
    provider_request_timeout_seconds: float = 30.0
    default_result_limit: int = 100
    pipeline_max_runtime_seconds: float = 900.0

    contact_finder_url: str | None = None
    contact_finder_api_key: str | None = None
    contact_lookup_concurrency: int = 5

    google_client_id: str | None = None
    google_client_secret: str | None = None
    google_redirect_uri: str = "http://localhost:8000/credentials/callback"
    google_auth_url: str = "https://accounts.google.com/o/oauth2/v2/auth"
    google_token_url: str = "https://oauth2.googleapis.com/token"
    gmail_api_base_url: str = "https://gmail.googleapis.com/gmail/v1"
    state_signing_secret: str = "dev-state-signing-secret-change-me-0000"
    oauth_state_ttl_seconds: int = 600
    allowed_return_origins: str = "http://localhost:5173"

    sendgrid_api_key: str | None = None
    sendgrid_from_email: str = "noreply@ai-jobhunter.com"
    sendgrid_from_name: str = ""
    mail_timeout_seconds: float = 15.0

    otel_enabled: bool = True
    otel_service_name: str = "jobhunter-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="JH_", extra="ignore")

    def return_origins(self) -> set[str]:
        return {chunk.strip().rstrip("/") for chunk in self.allowed_return_origins.split(",") if chunk.strip()}


@lru_cache
def get_settings() -> Settings:
    return Settings()

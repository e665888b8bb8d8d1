from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str
    project_name: str = "Support Query API"
    api_v1_prefix: str = "/api/v1"

    # Debug flag (exposes error details in INTERNAL_ERROR responses)
    debug: bool = Field(default=False, alias="DEBUG")

    # Supabase authentication configuration
    # SUPABASE_URL: Full Supabase project URL (e.g., https://xxx.supabase.co)
    #   Used to derive JWKS URL and issuer for JWT verification
    supabase_url: str
    # SUPABASE_JWT_AUDIENCE: JWT audience claim to validate (default: "authenticated")
    supabase_jwt_audience: str = "authenticated"
    # Header carrying a business API key (widget / server-to-server callers)
    api_key_header: str = "X-API-Key"

    # Gemini AI configuration (chat completion + embeddings)
    gemini_api_key: str | None = None
    gemini_model: str = "gemini-2.5-flash"
    gemini_embedding_model: str = "gemini-embedding-001"
    gemini_temperature: float = 0.7
    gemini_max_output_tokens: int = 1024
    # Cooldown in seconds after 429 RESOURCE_EXHAUSTED; used when RetryInfo not present
    gemini_quota_cooldown_seconds: int = 60
    # USD per 1K tokens, used for cost estimates only
    cost_per_1k_input_tokens: float = 0.0003
    cost_per_1k_output_tokens: float = 0.0025

    # Query pipeline tunables
    max_query_length: int = 2000
    rate_limit_per_minute: int = 60
    rate_limit_per_hour: int = 1000
    context_similarity_threshold: float = 0.75
    context_max_items: int = 10
    session_timeout_minutes: int = 30
    conversation_history_limit: int = 10
    context_window_tokens: int = 4000
    query_timeout_ms: int = 5000
    # When False, a request for an expired session id fails with SESSION_EXPIRED (410)
    session_renew_on_expiry: bool = True

    # Default monthly quota limits (used when a business has no counter row yet)
    monthly_token_limit: int = 1_000_000
    default_query_quota: int = 10_000
    default_embedding_quota: int = 5_000
    default_api_call_quota: int = 50_000
    default_storage_quota: int = 1_000

    # Analytics / usage delivery
    analytics_max_attempts: int = 3
    query_log_retention_days: int = 90

    @property
    def supabase_jwks_url(self) -> str:
        """Derive JWKS URL from Supabase URL."""
        return f"{self.supabase_url.rstrip('/')}/auth/v1/.well-known/jwks.json"

    @property
    def supabase_issuer(self) -> str:
        """Derive issuer from Supabase URL."""
        return f"{self.supabase_url.rstrip('/')}/auth/v1"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="forbid"
    )


settings = Settings()

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str | None = None
    supabase_url: str
    supabase_service_role_key: str
    supabase_jwt_secret: str
    jwt_algorithm: str = "HS256"
    jwt_audience: str = "authenticated"
    public_base_url: str = "http://localhost:8000"
    nuvemshop_webhook_secret: str | None = None
    nuvemshop_user_agent: str = "Tracky (suporte@tracky.app)"
    mercadolivre_signature_mode: str = "permissive_audit"  # permissive_audit | enforce
    provider_timeout_seconds: float = 12.0
    webhook_test_timeout_seconds: float = 5.0
    observability_export_url: str | None = None
    observability_export_bearer_token: str | None = None
    observability_export_timeout_seconds: float = 3.0

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()

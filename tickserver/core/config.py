from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ── Server ────────────────────────────────────────────────
    HOST: str = "0.0.0.0"
    PORT: int = 3000
    ENVIRONMENT: str = "development"
    SHUTDOWN_GRACE_SEC: int = 10

    # ── API ───────────────────────────────────────────────────
    API_PREFIX: str = "/api"
    CORS_ORIGIN: str = "http://localhost:3000"
    LOG_LEVEL: str = "INFO"
    # error.log and combined.log land here; empty disables file logging
    LOG_DIR: str = "logs"

    # ── SSE ───────────────────────────────────────────────────
    SSE_QUEUE_SIZE: int = 100
    SSE_HEARTBEAT_SEC: float = 15.0

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    def sse_headers(self) -> dict:
        """Cross-origin headers added to every SSE preamble."""
        return {
            "Access-Control-Allow-Origin": self.CORS_ORIGIN,
            "Access-Control-Allow-Headers": "Cache-Control",
        }


settings = Settings()

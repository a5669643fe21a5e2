from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", frozen=True)

    app_env: str = "local"
    app_host: str = "0.0.0.0"
    app_port: int = 8080
    log_level: str = "INFO"

    postgres_host: str = "postgres"
    postgres_port: int = 5432
    postgres_db: str = "tubegate"
    postgres_user: str = "tubegate"
    postgres_password: str = "tubegate"

    # full SQLAlchemy URL; overrides the postgres_* fields when set
    database_url: str | None = None

    # operator secret for /api/keys; unset means every admin request is a 500
    admin_token: str | None = None

    default_rate_limit_per_hour: int = Field(default=100, ge=1)

    # empty list: allow all origins outside production, none in production
    cors_origins: list[str] = Field(default_factory=list)

    metadata_timeout_seconds: float = 30.0

    @property
    def postgres_dsn(self) -> str:
        if self.database_url:
            return self.database_url
        # asyncpg DSN
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"


settings = Settings()  # reads from environment

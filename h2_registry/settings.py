import os

from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=(".env", ".env.production"), extra="ignore")

    ENVIRONMENT: str = "LOCAL"

    DATABASE_URL: str | None = os.getenv("DATABASE_URL")
    # Optional read replica; reads use the primary when unset
    DATABASE_READ_URL: str | None = os.getenv("DATABASE_READ_URL")

    # Used to build the URL when DATABASE_URL is unset
    POSTGRES_HOST: str = os.getenv("POSTGRES_HOST", "127.0.0.1")
    POSTGRES_PORT: int = int(os.getenv("POSTGRES_PORT", "5432"))
    POSTGRES_USER: str = os.getenv("POSTGRES_USER", "postgres")
    POSTGRES_PASSWORD: str = os.getenv("POSTGRES_PASSWORD", "postgres")
    POSTGRES_DB: str = os.getenv("POSTGRES_DB", "h2_registry")
    DATABASE_TEST_FP: str = "h2_registry_test.db"

    LOG_LEVEL: str = "INFO"
    CORS_ALLOWED_ORIGINS: str = ""

    # Ledger parameters
    CARBON_OFFSET_PER_CREDIT: float = 0.5
    RENEWABLE_ENERGY_PER_CREDIT: float = 2.5
    TRUST_SCORE_BASE: int = 85
    TRUST_SCORE_JITTER: int = 5
    MAX_IDENTIFIER_ATTEMPTS: int = 5
    CERTIFICATE_ISSUER: str = "Green Hydrogen Credits System"

    @property
    def database_url(self) -> str:
        """Build database URL from components if DATABASE_URL is not set."""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        else:
            return f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    @property
    def cors_origins(self) -> list[str]:
        """Parse CORS origins into a clean list."""
        if not self.CORS_ALLOWED_ORIGINS:
            return []
        return [
            o.strip().strip("'\"").rstrip("/")
            for o in self.CORS_ALLOWED_ORIGINS.split(",")
            if o.strip()
        ]


class LedgerConfig(BaseModel):
    """The subset of settings consumed by ledger operations.

    Passed explicitly into each operation so that tests and callers can
    override multipliers and retry limits without touching the environment.
    """

    model_config = ConfigDict(frozen=True)

    carbon_offset_per_credit: float = 0.5
    renewable_energy_per_credit: float = 2.5
    trust_score_base: int = 85
    trust_score_jitter: int = 5
    max_identifier_attempts: int = 5
    certificate_issuer: str = "Green Hydrogen Credits System"

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "LedgerConfig":
        source = source or settings
        return cls(
            carbon_offset_per_credit=source.CARBON_OFFSET_PER_CREDIT,
            renewable_energy_per_credit=source.RENEWABLE_ENERGY_PER_CREDIT,
            trust_score_base=source.TRUST_SCORE_BASE,
            trust_score_jitter=source.TRUST_SCORE_JITTER,
            max_identifier_attempts=source.MAX_IDENTIFIER_ATTEMPTS,
            certificate_issuer=source.CERTIFICATE_ISSUER,
        )


settings = Settings()

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Hard per-call limits imposed by DynamoDB.
MAX_BATCH_GET_KEYS = 100
MAX_BATCH_WRITE_REQUESTS = 25


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore", populate_by_name=True)

    # Runtime
    environment: str = Field(default="development", validation_alias="SINGLETABLE_ENV")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    # AWS / data
    aws_region: str = Field(default="us-east-1", validation_alias="AWS_REGION")
    ddb_table_name: str | None = Field(default=None, validation_alias="DDB_TABLE_NAME")
    # Local DynamoDB / LocalStack endpoint (e.g. http://localhost:8000)
    ddb_endpoint_url: str | None = Field(default=None, validation_alias="DDB_ENDPOINT_URL")

    # Bulk operations
    batch_get_chunk_size: int = Field(
        default=MAX_BATCH_GET_KEYS, validation_alias="BATCH_GET_CHUNK_SIZE"
    )
    batch_write_chunk_size: int = Field(
        default=MAX_BATCH_WRITE_REQUESTS, validation_alias="BATCH_WRITE_CHUNK_SIZE"
    )
    batch_concurrency: int = Field(default=1, validation_alias="BATCH_CONCURRENCY")
    # Full-jitter backoff between partial-batch retries. 0 disables sleeping.
    batch_retry_base_delay_s: float = Field(
        default=0.05, validation_alias="BATCH_RETRY_BASE_DELAY_S"
    )
    batch_retry_max_delay_s: float = Field(
        default=1.5, validation_alias="BATCH_RETRY_MAX_DELAY_S"
    )

    # ---- helpers / derived flags ----
    @property
    def normalized_environment(self) -> str:
        v = (self.environment or "").strip().lower()
        if v in ("prod", "production"):
            return "production"
        if v in ("stage", "staging"):
            return "staging"
        if v in ("dev", "development"):
            return "development"
        return v or "development"

    @property
    def is_production(self) -> bool:
        return self.normalized_environment == "production"

    @property
    def get_chunk_size(self) -> int:
        return max(1, min(MAX_BATCH_GET_KEYS, int(self.batch_get_chunk_size or MAX_BATCH_GET_KEYS)))

    @property
    def write_chunk_size(self) -> int:
        return max(
            1,
            min(MAX_BATCH_WRITE_REQUESTS, int(self.batch_write_chunk_size or MAX_BATCH_WRITE_REQUESTS)),
        )

    @property
    def concurrency(self) -> int:
        return max(1, int(self.batch_concurrency or 1))

    def require_in_production(self) -> None:
        """
        Enforce required settings in production.

        Development/staging may run against a table passed explicitly to the
        entity, but production must name its table through the environment.
        """
        if not self.is_production:
            return

        missing: list[str] = []
        if not self.ddb_table_name:
            missing.append("DDB_TABLE_NAME")

        if missing:
            raise RuntimeError(
                "Missing required production environment variables: "
                + ", ".join(missing)
            )

    def to_log_safe_dict(self) -> dict[str, object]:
        """
        A representation safe for structured logs / diagnostics.
        """
        return {
            "environment": self.normalized_environment,
            "log_level": self.log_level,
            "aws": {
                "aws_region": self.aws_region,
                "ddb_table_name": self.ddb_table_name,
                "ddb_endpoint_url_configured": bool((self.ddb_endpoint_url or "").strip()),
            },
            "batch": {
                "get_chunk_size": self.get_chunk_size,
                "write_chunk_size": self.write_chunk_size,
                "concurrency": self.concurrency,
                "retry_base_delay_s": self.batch_retry_base_delay_s,
                "retry_max_delay_s": self.batch_retry_max_delay_s,
            },
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    s = Settings()
    s.require_in_production()
    return s

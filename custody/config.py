from urllib.parse import quote_plus

from dotenv import load_dotenv
from pydantic import computed_field
from pydantic_settings import BaseSettings

load_dotenv()  # loads .env locally if present


class Settings(BaseSettings):
    # Accept a full DATABASE_URL directly (local dev, tests, CI)
    database_url: str = ""

    # Or build it from discrete parts (Cloud Run style)
    db_name: str = "custody"
    db_user: str = "custody"
    db_password: str = ""
    db_host: str = ""

    # Connection pool config
    db_pool_size: int = 5
    db_max_overflow: int = 2

    # Shared secret for the /internal trigger endpoints
    api_key: str = ""

    # Object store (S3 or MinIO)
    s3_endpoint: str = ""
    s3_public_endpoint: str = ""
    s3_region: str = "us-east-1"
    s3_access_key: str = ""
    s3_secret_key: str = ""
    evidence_bucket_raw: str = "evidence-raw"
    evidence_bucket_derived: str = "evidence-derived"
    upload_url_ttl_minutes: int = 10
    read_url_ttl_minutes: int = 15
    url_clock_skew_minutes: int = 2

    # Search
    opensearch_host: str = "localhost"
    opensearch_port: int = 9200
    opensearch_user: str = ""
    opensearch_password: str = ""
    opensearch_use_ssl: bool = False
    opensearch_verify_certs: bool = False
    search_index_evidence: str = "evidence"

    # OCR / text extraction (Read API compatible)
    read_api_endpoint: str = ""
    read_api_key: str = ""
    read_api_max_attempts: int = 20
    read_api_poll_interval: float = 0.75
    extraction_timeout: float = 30.0

    # Speech-to-text for audio evidence; unset means audio is stored untranscribed
    speech_key: str = ""
    speech_region: str = ""
    speech_endpoint: str = ""
    speech_language: str = "en-US"

    # Identity provider
    entra_tenant_id: str = ""
    entra_api_audience: str = ""
    jwks_url: str = "https://login.microsoftonline.com/{tenant_id}/discovery/v2.0/keys"

    cors_allowed_origins: str = ""
    log_level: str = "INFO"

    @computed_field
    @property
    def effective_database_url(self) -> str:
        if self.database_url:
            return self.database_url

        if self.db_host.startswith("/cloudsql/"):
            return (
                f"postgresql+psycopg://{quote_plus(self.db_user)}:{quote_plus(self.db_password)}@/"
                f"{quote_plus(self.db_name)}?host={quote_plus(self.db_host)}"
            )

        host = self.db_host or "localhost"
        return (
            f"postgresql+psycopg://{quote_plus(self.db_user)}:{quote_plus(self.db_password)}"
            f"@{host}/{quote_plus(self.db_name)}"
        )

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allowed_origins.split(",") if o.strip()]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


settings = Settings()

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ALLOWED_STORAGE_BACKENDS = {"memory", "sql"}
DEFAULT_SUPER_ADMIN_EMAIL = "admin@storefront.local"


class Settings(BaseSettings):
    app_name: str = "Storefront Order Service"

    database_url: str = Field(
        default="sqlite+pysqlite:///./storefront.db",
        validation_alias="STOREFRONT_DATABASE_URL",
    )
    storage_backend: str = Field(default="sql", validation_alias="STOREFRONT_STORAGE_BACKEND")
    testing: bool = Field(default=False, validation_alias="STOREFRONT_TESTING")

    super_admin_email: str = DEFAULT_SUPER_ADMIN_EMAIL
    admin_emails: str = ""

    expiry_window_h: float = 24.0
    expiry_sweep_interval_s: int = 15 * 60
    sweep_concurrency: int = 8
    bulk_concurrency: int = 8

    index_retention: int = 500

    slip_verifier_base_url: str = "https://api.slipok.com"
    slip_verifier_branch_id: str = ""
    slip_verifier_api_key: str = ""
    slip_verifier_timeout_s: float = 15.0
    slip_verifier_max_retries: int = 2
    slip_verifier_backoff_s: float = 0.5
    allow_unverified_slips: bool = False

    verification_timeout_s: float = 30.0

    store_read_max_retries: int = 2
    store_read_backoff_s: float = 0.2

    export_debounce_s: float = 2.0
    export_min_interval_s: float = 5.0

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    @field_validator("storage_backend")
    @classmethod
    def validate_storage_backend(cls, value: str) -> str:
        backend = value.lower().strip()
        if backend not in ALLOWED_STORAGE_BACKENDS:
            allowed = ", ".join(sorted(ALLOWED_STORAGE_BACKENDS))
            raise ValueError(f"STOREFRONT_STORAGE_BACKEND must be one of: {allowed}")
        return backend

    @field_validator("sweep_concurrency", "bulk_concurrency", "index_retention")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("value must be >= 1")
        return value


settings = Settings()


def admin_emails_list() -> list[str]:
    return [value.strip().lower() for value in settings.admin_emails.split(",") if value.strip()]


def expiry_window_s() -> float:
    return settings.expiry_window_h * 60 * 60


def ensure_secure_runtime_settings() -> None:
    """Fail fast when production-like runtime uses insecure defaults."""
    if not settings.testing and settings.allow_unverified_slips:
        raise RuntimeError(
            "ALLOW_UNVERIFIED_SLIPS must be false when STOREFRONT_TESTING is false"
        )
    if not settings.testing and settings.storage_backend != "sql":
        raise RuntimeError("STOREFRONT_STORAGE_BACKEND must be 'sql' when STOREFRONT_TESTING is false")
    if not settings.testing and _is_sqlite_url(settings.database_url):
        raise RuntimeError("STOREFRONT_DATABASE_URL must use postgres when STOREFRONT_TESTING is false")
    if not settings.testing and not (
        settings.slip_verifier_branch_id and settings.slip_verifier_api_key
    ):
        raise RuntimeError(
            "SLIP_VERIFIER_BRANCH_ID and SLIP_VERIFIER_API_KEY must be set "
            "when STOREFRONT_TESTING is false"
        )


def _is_sqlite_url(database_url: str) -> bool:
    value = database_url.strip().lower()
    return value.startswith("sqlite")

import os
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy.engine import make_url


class ConfigValidationError(RuntimeError):
    pass


def parse_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def parse_int_env(name: str, default: int, *, minimum: int | None = None) -> int:
    raw = os.getenv(name)
    try:
        value = int(raw) if raw is not None else default
    except ValueError:
        value = default
    if minimum is not None:
        value = max(minimum, value)
    return value


def parse_float_env(name: str, default: float, *, minimum: float | None = None) -> float:
    raw = os.getenv(name)
    try:
        value = float(raw) if raw is not None else default
    except ValueError:
        value = default
    if minimum is not None:
        value = max(minimum, value)
    return value


def get_database_url(root_dir: Path) -> str:
    configured = os.getenv("DATABASE_URL")
    if configured:
        url = make_url(configured)
        if url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:"):
            raise ConfigValidationError(
                "Invalid DATABASE_URL: in-memory SQLite is not supported; use a file path."
            )
        return configured
    db_dir = root_dir / "data"
    db_dir.mkdir(parents=True, exist_ok=True)
    return f"sqlite+aiosqlite:///{db_dir / 'gateway.db'}"


@dataclass(frozen=True)
class GatewaySettings:
    upstream_timeout_seconds: float
    upstream_connect_timeout_seconds: float
    rate_limit_sweep_interval_seconds: float
    enforce_tpm: bool
    request_log_queue_maxsize: int
    request_log_batch_size: int
    request_log_flush_interval_seconds: float
    request_log_retention_days: int
    settlement_drain_timeout_seconds: float
    models_owned_by: str
    log_level: str
    anomaly_log_dir: str


def get_gateway_settings() -> GatewaySettings:
    return GatewaySettings(
        upstream_timeout_seconds=parse_float_env(
            "UPSTREAM_TIMEOUT_SECONDS", 120.0, minimum=1.0
        ),
        upstream_connect_timeout_seconds=parse_float_env(
            "UPSTREAM_CONNECT_TIMEOUT_SECONDS", 15.0, minimum=1.0
        ),
        rate_limit_sweep_interval_seconds=parse_float_env(
            "RATE_LIMIT_SWEEP_INTERVAL_SECONDS", 300.0, minimum=1.0
        ),
        enforce_tpm=parse_bool_env("ENFORCE_TPM", False),
        request_log_queue_maxsize=parse_int_env(
            "REQUEST_LOG_QUEUE_MAXSIZE", 2000, minimum=1
        ),
        request_log_batch_size=parse_int_env("REQUEST_LOG_BATCH_SIZE", 100, minimum=1),
        request_log_flush_interval_seconds=parse_float_env(
            "REQUEST_LOG_FLUSH_INTERVAL_SECONDS", 1.0, minimum=0.01
        ),
        request_log_retention_days=parse_int_env(
            "REQUEST_LOG_RETENTION_DAYS", 0, minimum=0
        ),
        settlement_drain_timeout_seconds=parse_float_env(
            "SETTLEMENT_DRAIN_TIMEOUT_SECONDS", 30.0, minimum=0.1
        ),
        models_owned_by=(os.getenv("MODELS_OWNED_BY") or "").strip() or "gateway",
        log_level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper(),
        anomaly_log_dir=(os.getenv("ANOMALY_LOG_DIR") or "").strip() or "logs",
    )


@dataclass(frozen=True)
class CORSSettings:
    allow_origins: list[str]
    allow_credentials: bool
    allow_methods: list[str]
    allow_headers: list[str]


def _split_csv_env(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    values = [value.strip() for value in raw.split(",")]
    return [value for value in values if value]


def get_cors_settings() -> CORSSettings:
    origins = _split_csv_env("CORS_ALLOW_ORIGINS", "")
    credentials_default = bool(origins)
    allow_credentials = parse_bool_env("CORS_ALLOW_CREDENTIALS", credentials_default)

    if not origins:
        allow_credentials = False

    if allow_credentials and "*" in origins:
        raise ConfigValidationError(
            "Invalid CORS config: CORS_ALLOW_ORIGINS cannot include '*' when "
            "CORS_ALLOW_CREDENTIALS=true."
        )

    return CORSSettings(
        allow_origins=origins,
        allow_credentials=allow_credentials,
        allow_methods=_split_csv_env("CORS_ALLOW_METHODS", "GET,POST,OPTIONS"),
        allow_headers=_split_csv_env(
            "CORS_ALLOW_HEADERS",
            "Authorization,Content-Type,X-Requested-With",
        ),
    )

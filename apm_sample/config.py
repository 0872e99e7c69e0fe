"""
config.py
---------
Purpose: Read all runtime settings ONCE at process start from environment
variables, so the tracing sink address, credentials and sampling rate are
known before the first transaction is started.

Key ideas:
- Settings (one frozen-ish dataclass passed around explicitly, no globals)
- Small env helpers (_env_float, _env_bool) that tolerate blank values
- Credentials come through the secrets loader, never hardcoded

.env example:
  APM_SERVICE_NAME=apm-sample
  APM_SERVER_URL=https://apm.example.com:8200
  APM_SECRET_TOKEN=changeme
  APM_TRANSACTION_SAMPLE_RATE=1.0
  LOG_LEVEL=INFO
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, List, Optional, TypeVar
import os

from apm_sample.secrets_loader import secrets


EXPORTERS = ("otlp", "console", "none")

T = TypeVar("T")


# --- Exception ---------------------------------------------------------------

class ConfigError(ValueError):
    """
    Raised when a setting has a value the tracing pipeline cannot use.
    Carries the offending variable name in 'setting'.
    """
    def __init__(self, setting: str, detail: str):
        super().__init__(f"Invalid setting {setting}: {detail}")
        self.setting = setting
        self.detail = detail


# --- Settings model ----------------------------------------------------------

@dataclass
class Settings:
    """
    Everything the service needs to boot:

    - service_name / service_version / environment: who is sending telemetry
    - enabled:            False = serve requests without any tracing
    - exporter:           "otlp" (default), "console" or "none"
    - server_url:         base URL of the OTLP/HTTP endpoint (no /v1/traces)
    - secret_token / api_key: credentials for the backend (optional)
    - extra_headers:      raw "k=v,k2=v2" string for extra exporter headers
    - verify_server_cert: TLS validation for the backend. Turning it off is
                          for local testing against self-signed certs ONLY.
    - ca_cert_file:       custom CA bundle for the backend
    - sample_rate:        share of transactions sent to the backend (0..1)
    - export_timeout:     seconds per export request
    - log_level / log_format: logging setup ("json" or "dev")
    - messaging_delay:    seconds the /api/messaging route pretends to work
    - config_errors:      unparseable tracing variables; the default was used
                          instead and validate() reports the first one
    """
    service_name: str = "apm-sample"
    service_version: str = "1.0.0"
    environment: str = "development"
    enabled: bool = True
    exporter: str = "otlp"
    server_url: str = "http://localhost:4318"
    secret_token: Optional[str] = None
    api_key: Optional[str] = None
    extra_headers: Optional[str] = None
    verify_server_cert: bool = True
    ca_cert_file: Optional[str] = None
    sample_rate: float = 1.0
    export_timeout: float = 10.0
    log_level: str = "INFO"
    log_format: str = "json"
    messaging_delay: float = 0.5
    config_errors: List[ConfigError] = field(default_factory=list)

    def validate(self) -> "Settings":
        """Raise ConfigError if tracing can't be built from these values."""
        if self.config_errors:
            raise self.config_errors[0]
        if not 0.0 <= self.sample_rate <= 1.0:
            raise ConfigError(
                "APM_TRANSACTION_SAMPLE_RATE", f"{self.sample_rate} is not within [0.0, 1.0]"
            )
        if self.exporter not in EXPORTERS:
            raise ConfigError("APM_EXPORTER", f"'{self.exporter}' is not one of {', '.join(EXPORTERS)}")
        if self.export_timeout <= 0:
            raise ConfigError("APM_EXPORT_TIMEOUT_SECONDS", "must be positive")
        return self


def _env_str(*names: str, default: str) -> str:
    """First non-blank value among 'names', else default."""
    for name in names:
        value = os.environ.get(name)
        if value not in (None, ""):
            return value.strip()
    return default


def _env_float(name: str, default: float) -> float:
    """Read a float from env, falling back to default if missing/blank."""
    value = os.environ.get(name)
    if value in (None, ""):
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigError(name, f"'{value}' is not a number") from None


def _env_bool(name: str, default: bool) -> bool:
    """Accepts 1/0, true/false, yes/no, on/off (any case)."""
    value = os.environ.get(name)
    if value in (None, ""):
        return default
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ConfigError(name, f"'{value}' is not a boolean")


def load_settings_from_env() -> Settings:
    """
    Build Settings from environment variables so the service can be pointed
    at another backend without code changes. Both the APM_* names and the
    standard OTEL_* names are honoured (APM_* wins).
    """
    # A bad tracing variable must not stop the service from booting: keep the
    # default and let init_tracing report it as an initialization fault.
    errors: List[ConfigError] = []

    def tracing(read: Callable[[str, T], T], name: str, default: T) -> T:
        try:
            return read(name, default)
        except ConfigError as exc:
            errors.append(exc)
            return default

    return Settings(
        service_name=_env_str("APM_SERVICE_NAME", "OTEL_SERVICE_NAME", default="apm-sample"),
        service_version=_env_str("APM_SERVICE_VERSION", default="1.0.0"),
        environment=_env_str("APM_ENVIRONMENT", default="development"),
        enabled=tracing(_env_bool, "APM_ENABLED", True),
        exporter=_env_str("APM_EXPORTER", default="otlp").lower(),
        server_url=_env_str(
            "APM_SERVER_URL", "OTEL_EXPORTER_OTLP_ENDPOINT", default="http://localhost:4318"
        ).rstrip("/"),
        secret_token=secrets.get_optional("APM_SECRET_TOKEN"),
        api_key=secrets.get_optional("APM_API_KEY"),
        extra_headers=os.environ.get("OTEL_EXPORTER_OTLP_HEADERS") or None,
        verify_server_cert=tracing(_env_bool, "APM_VERIFY_SERVER_CERT", True),
        ca_cert_file=os.environ.get("APM_SERVER_CA_CERT_FILE") or None,
        sample_rate=tracing(_env_float, "APM_TRANSACTION_SAMPLE_RATE", 1.0),
        export_timeout=tracing(_env_float, "APM_EXPORT_TIMEOUT_SECONDS", 10.0),
        log_level=_env_str("LOG_LEVEL", default="INFO").upper(),
        log_format=_env_str("LOG_FORMAT", default="json").lower(),
        messaging_delay=_env_float("MESSAGING_DELAY_SECONDS", 0.5),
        config_errors=errors,
    )

# secrets_loader.py
"""
A tiny, pluggable secrets loader for the APM backend credentials
(APM_SECRET_TOKEN, APM_API_KEY).

Usage from anywhere:
    from apm_sample.secrets_loader import secrets
    token = secrets.get_optional("APM_SECRET_TOKEN")

Backend is selected via env var:
    SECRETS_BACKEND = "env"
Mounted-secret directories (Kubernetes/OpenShift style) are supported with:
    SECRETS_BACKEND = "file", SECRETS_DIR = /var/run/secrets/apm
"""

from __future__ import annotations
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import structlog

logger = structlog.get_logger(__name__)


# ---------- Base interface ----------

class SecretsBackend:
    """A minimal contract all backends must follow."""

    def get(self, key: str) -> str:
        """
        Return the secret value for 'key', raise KeyError if it isn't set.
        """
        raise NotImplementedError


# ---------- ENV ----------

@dataclass
class EnvSecretsBackend(SecretsBackend):
    """
    Reads secrets from environment variables.
    """

    def get(self, key: str) -> str:
        value = os.getenv(key)
        if value is None or value == "":
            raise KeyError(f"Secret '{key}' is not set in environment")
        return value


# ---------- Mounted files ----------

@dataclass
class FileSecretsBackend(SecretsBackend):
    """
    One file per secret inside 'directory'; the file name is the key.
    Trailing newlines (common with `kubectl create secret`) are stripped.
    """
    directory: str

    def get(self, key: str) -> str:
        path = Path(self.directory) / key
        if not path.is_file():
            raise KeyError(f"Secret '{key}' not found in {self.directory}")
        value = path.read_text(encoding="utf-8").strip()
        if not value:
            raise KeyError(f"Secret '{key}' is empty in {self.directory}")
        return value


# ---------- Factory + singleton facade ----------

def _make_backend() -> SecretsBackend:
    backend = (os.getenv("SECRETS_BACKEND") or "env").strip().lower()
    if backend == "env":
        return EnvSecretsBackend()
    if backend == "file":
        return FileSecretsBackend(directory=os.getenv("SECRETS_DIR", "/var/run/secrets/apm"))
    # Fallback to env and warn
    logger.warning("unknown_secrets_backend", backend=backend, fallback="env")
    return EnvSecretsBackend()


class SecretsClient:
    """
    Thin wrapper over a backend with an optional-lookup helper.
    """
    def __init__(self, backend: SecretsBackend):
        self._backend = backend

    def get(self, key: str) -> str:
        return self._backend.get(key)

    def get_optional(self, key: str) -> Optional[str]:
        try:
            return self._backend.get(key)
        except KeyError:
            return None


# Create a module-level singleton you can import anywhere
secrets = SecretsClient(_make_backend())

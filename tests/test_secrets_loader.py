import pytest
from structlog.testing import capture_logs

from apm_sample.secrets_loader import (
    EnvSecretsBackend, FileSecretsBackend, SecretsClient, _make_backend, secrets,
)

def test_env_backend_returns_value(monkeypatch):
    monkeypatch.setenv("APM_SECRET_TOKEN", "abc123")
    backend = EnvSecretsBackend()
    assert backend.get("APM_SECRET_TOKEN") == "abc123"

def test_env_backend_missing_raises(monkeypatch):
    monkeypatch.delenv("MISSING_KEY", raising=False)
    backend = EnvSecretsBackend()
    with pytest.raises(KeyError):
        backend.get("MISSING_KEY")

def test_file_backend_strips_trailing_newline(tmp_path):
    (tmp_path / "APM_API_KEY").write_text("key-from-file\n", encoding="utf-8")
    backend = FileSecretsBackend(directory=str(tmp_path))
    assert backend.get("APM_API_KEY") == "key-from-file"
    with pytest.raises(KeyError):
        backend.get("APM_SECRET_TOKEN")

def test_get_optional_returns_none_when_missing(monkeypatch):
    monkeypatch.delenv("APM_API_KEY", raising=False)
    client = SecretsClient(EnvSecretsBackend())
    assert client.get_optional("APM_API_KEY") is None
    with pytest.raises(KeyError):
        client.get("APM_API_KEY")

def test_module_singleton_uses_env_backend_by_default(monkeypatch):
    monkeypatch.setenv("FOO", "bar")
    # The module-level 'secrets' was created at import time with SECRETS_BACKEND unset.
    assert secrets.get("FOO") == "bar"

def test_file_backend_selected_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("SECRETS_BACKEND", "file")
    monkeypatch.setenv("SECRETS_DIR", str(tmp_path))
    backend = _make_backend()
    assert isinstance(backend, FileSecretsBackend)
    assert backend.directory == str(tmp_path)

def test_unknown_backend_falls_back_to_env_and_warns(monkeypatch):
    monkeypatch.setenv("SECRETS_BACKEND", "bogus")
    with capture_logs() as logs:
        backend = _make_backend()
    assert isinstance(backend, EnvSecretsBackend)
    (entry,) = [e for e in logs if e["event"] == "unknown_secrets_backend"]
    assert entry["log_level"] == "warning"
    assert entry["backend"] == "bogus"
    assert entry["fallback"] == "env"

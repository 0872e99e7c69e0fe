"""Tests for apm_sample.logging_setup."""

import json
import logging

import pytest
import structlog

from apm_sample.logging_setup import setup_logging


def _last_json(capsys):
    line = capsys.readouterr().err.strip().split("\n")[-1]
    return json.loads(line)


class TestSetupLogging:
    def test_json_output(self, capsys):
        setup_logging(service_name="apm-sample", log_format="json")
        structlog.get_logger().info("test_event", key="value")
        data = _last_json(capsys)
        assert data["event"] == "test_event"
        assert data["key"] == "value"
        assert data["service"] == "apm-sample"
        assert data["level"] == "info"
        assert "timestamp" in data

    def test_dev_output_no_json(self, capsys):
        setup_logging(service_name="apm-sample", log_format="dev")
        structlog.get_logger().info("hello_dev", user="alice")
        output = capsys.readouterr().err.strip()
        with pytest.raises(json.JSONDecodeError):
            json.loads(output.split("\n")[-1])
        assert "hello_dev" in output

    def test_credentials_are_censored(self, capsys):
        setup_logging(service_name="apm-sample")
        structlog.get_logger().info("exporter_configured", authorization="Bearer tok", secret_token="tok")
        data = _last_json(capsys)
        assert data["authorization"] == "***"
        assert data["secret_token"] == "***"

    def test_level_filters(self, capsys):
        setup_logging(service_name="apm-sample", log_level="warning")
        structlog.get_logger().info("quiet")
        structlog.get_logger().warning("loud")
        output = capsys.readouterr().err
        assert "quiet" not in output
        assert "loud" in output

    def test_opentelemetry_sdk_logs_are_routed(self, capsys):
        setup_logging(service_name="apm-sample", log_level="INFO")
        assert logging.getLogger("opentelemetry").level == logging.INFO
        logging.getLogger("opentelemetry.exporter.otlp.proto.http.trace_exporter").error(
            "Failed to export batch"
        )
        data = _last_json(capsys)
        assert data["event"] == "Failed to export batch"
        assert data["level"] == "error"
        assert data["service"] == "apm-sample"

"""Tests for settings and duration parsing."""

import logging

import pytest

from chaos_monkey.config import Settings, parse_duration, parse_interval, validate_duration
from chaos_monkey.errors import ValidationError
from chaos_monkey.logs import LOG_FORMAT, setup_logging


class TestParseDuration:
    @pytest.mark.parametrize(
        "text, seconds",
        [
            ("10s", 10.0),
            ("1m30s", 90.0),
            ("2h", 7200.0),
            ("500ms", 0.5),
            ("1.5s", 1.5),
            ("1h2m3s", 3723.0),
            ("0", 0.0),
            ("15", 15.0),
        ],
    )
    def test_valid(self, text, seconds):
        assert parse_duration(text) == pytest.approx(seconds)

    @pytest.mark.parametrize("text", ["", "abc", "10x", "s10", "10s5", "-5"])
    def test_invalid(self, text):
        with pytest.raises(ValidationError):
            parse_duration(text)

    def test_numbers_pass_through(self):
        assert parse_duration(3) == 3.0

    def test_empty_interval_means_once(self):
        assert parse_interval("") == 0.0
        assert parse_interval(None) == 0.0
        assert parse_interval("30s") == 30.0


class TestValidateDuration:
    def test_rules(self):
        validate_duration(None, 10)
        validate_duration(5, 10)
        validate_duration(50, 0)
        with pytest.raises(ValidationError):
            validate_duration(0, 10)
        with pytest.raises(ValidationError):
            validate_duration(10, 10)


class TestSettings:
    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("CHAOS_RUNTIME", "containerd")
        monkeypatch.setenv("CONTAINERD_NAMESPACE", "default")
        monkeypatch.setenv("DRY_RUN", "true")
        settings = Settings.from_env()
        assert settings.runtime == "containerd"
        assert settings.containerd_namespace == "default"
        assert settings.containerd_address == "/run/containerd/containerd.sock"
        assert settings.dry_run

    def test_defaults(self, monkeypatch):
        for name in ("CHAOS_RUNTIME", "DOCKER_HOST", "CONTAINERD_NAMESPACE", "DRY_RUN", "LOG_LEVEL"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings.from_env()
        assert settings.runtime == "docker"
        assert settings.docker_host is None
        assert settings.containerd_namespace == "k8s.io"
        assert not settings.dry_run

    def test_unknown_runtime(self):
        with pytest.raises(ValidationError):
            Settings(runtime="podman").validate()

    def test_log_level(self):
        assert Settings(log_level="debug").validate().log_level == "DEBUG"
        with pytest.raises(ValidationError):
            Settings(log_level="verbose").validate()


class TestLogging:
    def test_setup_replaces_handlers(self):
        root = logging.getLogger()
        saved = list(root.handlers), root.level
        try:
            setup_logging("debug")
            setup_logging("debug")
            assert len(root.handlers) == 1
            assert root.handlers[0].formatter._fmt == LOG_FORMAT
            assert root.level == logging.DEBUG
        finally:
            root.handlers[:] = saved[0]
            root.setLevel(saved[1])

"""Tests for environment-driven configuration."""

from __future__ import annotations

import pytest

from coderunner.config import MAX_WALL_CLOCK_MS, Config


def test_defaults(monkeypatch):
    for name in ("CODERUNNER_ALLOWED_LANGS", "CODERUNNER_WALL_CLOCK_MS", "CODERUNNER_API_KEY", "PORT"):
        monkeypatch.delenv(name, raising=False)
    config = Config.from_env()
    assert config.allowed_langs == ["c", "cpp", "java", "python"]
    assert config.wall_clock_ms == 15_000
    assert config.api_key == ""
    assert config.port == 8080


def test_env_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("CODERUNNER_ALLOWED_LANGS", " Python, c ")
    monkeypatch.setenv("CODERUNNER_WORKSPACE_ROOT", str(tmp_path))
    monkeypatch.setenv("CODERUNNER_MAX_MEMORY_MB", "128")
    monkeypatch.setenv("CODERUNNER_LOG_LEVEL", "debug")
    config = Config.load()
    assert config.allowed_langs == ["python", "c"]
    assert config.workspace_root == str(tmp_path)
    assert config.max_memory_mb == 128
    assert config.log_level == "DEBUG"


def test_invalid_values_raise(monkeypatch):
    monkeypatch.setenv("CODERUNNER_MAX_CPU_SECS", "ten")
    with pytest.raises(ValueError):
        Config.load()
    monkeypatch.delenv("CODERUNNER_MAX_CPU_SECS")
    monkeypatch.setenv("CODERUNNER_ALLOWED_LANGS", "python,cobol")
    with pytest.raises(ValueError):
        Config.load()


def test_limits_for_language():
    config = Config(max_memory_mb=256, java_max_memory_mb=0, wall_clock_ms=10 * MAX_WALL_CLOCK_MS)
    assert config.limits_for("c").memory_bytes == 256 * 1024 * 1024
    assert config.limits_for("java").memory_bytes == 0
    assert config.limits_for("python").wall_clock_ms == MAX_WALL_CLOCK_MS


def test_request_overrides_only_lower_limits():
    limits = Config(wall_clock_ms=15_000, input_wait_ms=300_000).limits_for("python")
    assert limits.narrowed(wall_clock_ms=2_000).wall_clock_ms == 2_000
    assert limits.narrowed(wall_clock_ms=60_000).wall_clock_ms == 15_000
    assert limits.narrowed(input_wait_ms=1_000).input_wait_ms == 1_000
    assert limits.narrowed(wall_clock_ms=0, input_wait_ms=-5) == limits

"""Tests for client settings loading (YAML, env interpolation, merge, redaction)."""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from chat_config import (
    REDACTED,
    ClientSettings,
    deep_merge,
    interpolate_config,
    interpolate_value,
    load_settings,
    redact_config,
    redact_headers,
)

ENV_VARS = ("CHATSTREAM_BASE_URL", "CHATSTREAM_API_TOKEN", "CHATSTREAM_MODEL")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


def _write(tmp_path, text, name="chat.yaml"):
    path = tmp_path / name
    path.write_text(text)
    return str(path)


# ── Interpolation ─────────────────────────────────────────────────────


class TestInterpolation:
    def test_allowed_var(self, monkeypatch):
        monkeypatch.setenv("CHATSTREAM_TEST_TOKEN", "tok-123")
        assert interpolate_value("Bearer {env:CHATSTREAM_TEST_TOKEN}") == "Bearer tok-123"

    def test_disallowed_var(self):
        with pytest.raises(ValueError, match="not in the allowlist"):
            interpolate_value("{env:HOME}")

    def test_missing_var(self):
        with pytest.raises(ValueError, match="is not set"):
            interpolate_value("{env:CHATSTREAM_DOES_NOT_EXIST}")

    def test_nested(self, monkeypatch):
        monkeypatch.setenv("CHATSTREAM_X", "1")
        result = interpolate_config({"a": {"b": "{env:CHATSTREAM_X}"}, "n": 5})
        assert result == {"a": {"b": "1"}, "n": 5}


# ── Merge / redaction ─────────────────────────────────────────────────


class TestMergeAndRedact:
    def test_deep_merge(self):
        base = {"a": {"x": 1, "y": 2}, "b": 1}
        merged = deep_merge(base, {"a": {"y": 3}, "c": 4})
        assert merged == {"a": {"x": 1, "y": 3}, "b": 1, "c": 4}
        assert base["a"]["y"] == 2

    def test_redact_sensitive_keys(self):
        redacted = redact_config({"api_token": "secret", "base_url": "http://x"})
        assert redacted["api_token"] == REDACTED
        assert redacted["base_url"] == "http://x"

    def test_redact_interpolated_values(self):
        redacted = redact_config({"base_url": "{env:CHATSTREAM_URL}"})
        assert redacted["base_url"].startswith(REDACTED)
        assert "env:CHATSTREAM_URL" in redacted["base_url"]

    def test_empty_secret_left_visible(self):
        assert redact_config({"api_token": ""})["api_token"] == ""

    def test_redact_headers(self):
        headers = redact_headers({"Authorization": "Bearer t", "Accept": "text/event-stream"})
        assert headers == {"Authorization": REDACTED, "Accept": "text/event-stream"}

    def test_settings_redacted(self):
        assert ClientSettings(api_token="t").redacted()["api_token"] == REDACTED


# ── Loading ───────────────────────────────────────────────────────────


class TestLoadSettings:
    def test_defaults_without_file(self):
        settings = load_settings()
        assert settings == ClientSettings()
        assert settings.throttle_interval == 0.05
        assert settings.poll_interval == 0.01

    def test_file_values(self, tmp_path):
        path = _write(tmp_path, "chatstream:\n  base_url: http://chat.local\n  throttle_ms: 20\n")
        settings = load_settings(path)
        assert settings.base_url == "http://chat.local"
        assert settings.throttle_ms == 20
        assert settings.queue_size == 256

    def test_default_file_in_cwd(self, tmp_path):
        _write(tmp_path, "chatstream:\n  default_model: test/model\n", name=".chatstream.yaml")
        assert load_settings().default_model == "test/model"

    def test_missing_explicit_path(self, tmp_path):
        with pytest.raises(ValueError, match="Config not found"):
            load_settings(str(tmp_path / "nope.yaml"))

    def test_env_interpolation_in_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CHATSTREAM_SECRET", "s3cret")
        path = _write(tmp_path, 'chatstream:\n  api_token: "{env:CHATSTREAM_SECRET}"\n')
        assert load_settings(path).api_token == "s3cret"

    def test_env_override_beats_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CHATSTREAM_BASE_URL", "http://from-env")
        path = _write(tmp_path, "chatstream:\n  base_url: http://from-file\n")
        assert load_settings(path).base_url == "http://from-env"

    def test_overrides_win(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CHATSTREAM_MODEL", "env/model")
        settings = load_settings(overrides={"default_model": "arg/model"})
        assert settings.default_model == "arg/model"

    def test_unknown_keys_ignored(self, tmp_path):
        path = _write(tmp_path, "chatstream:\n  colour: blue\n")
        assert load_settings(path) == ClientSettings()

    def test_string_numbers_coerced(self, tmp_path):
        path = _write(tmp_path, "chatstream:\n  queue_size: '8'\n")
        assert load_settings(path).queue_size == 8

    def test_bad_type(self, tmp_path):
        path = _write(tmp_path, "chatstream:\n  throttle_ms: soon\n")
        with pytest.raises(ValueError, match="throttle_ms"):
            load_settings(path)

    def test_validation(self, tmp_path):
        path = _write(tmp_path, "chatstream:\n  queue_size: 0\n  reconcile_window: 1\n")
        with pytest.raises(ValueError) as exc:
            load_settings(path)
        assert "queue_size" in str(exc.value)
        assert "reconcile_window" in str(exc.value)

    def test_non_mapping_file(self, tmp_path):
        path = _write(tmp_path, "- just\n- a list\n")
        with pytest.raises(ValueError, match="mapping"):
            load_settings(path)

    def test_empty_values_keep_defaults(self, tmp_path):
        path = _write(tmp_path, "chatstream:\n  api_token:\n  throttle_ms:\n")
        settings = load_settings(path)
        assert settings.api_token == ""
        assert settings.throttle_ms == 50

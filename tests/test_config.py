"""Tests for ar_followups.config -- defaults, YAML overlay, environment secrets."""

from datetime import timedelta

import pytest

from ar_followups.config import FollowUpConfig, RetryPolicy, get_config


class TestDefaults:

    def test_defaults(self):
        cfg = FollowUpConfig()
        assert cfg.retry.max_attempts == 3
        assert cfg.scheduler.scan_interval_seconds == 600
        assert cfg.dispatch.catch_up_window == timedelta(days=7)
        assert cfg.dispatch.claim_timeout == timedelta(minutes=30)
        assert cfg.dispatch.worker_id

    @pytest.mark.parametrize("failures,expected", [
        (0, timedelta(0)),
        (1, timedelta(hours=1)),
        (2, timedelta(hours=2)),
        (3, timedelta(hours=4)),
        (10, timedelta(hours=24)),
    ])
    def test_backoff(self, failures, expected):
        assert RetryPolicy().backoff_for(failures) == expected

    def test_catch_up_disabled(self):
        cfg = FollowUpConfig()
        cfg.dispatch.catch_up_days = None
        assert cfg.dispatch.catch_up_window is None


class TestYaml:

    def test_overlay(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "retry:\n"
            "  max_attempts: 5\n"
            "  retry_backoff_minutes: 15\n"
            "scheduler:\n"
            "  scan_interval_seconds: 60\n"
            "sms:\n"
            "  default_country_code: '44'\n"
            "unknown_section:\n"
            "  foo: bar\n",
            encoding="utf-8",
        )
        cfg = get_config(path)
        assert cfg.retry.max_attempts == 5
        assert cfg.retry.backoff_for(1) == timedelta(minutes=15)
        assert cfg.scheduler.scan_interval_seconds == 60
        assert cfg.sms.default_country_code == "44"
        assert cfg.scheduler.batch_limit == 100

    def test_unknown_keys_ignored(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("retry:\n  nonsense: 1\n", encoding="utf-8")
        assert not hasattr(get_config(path).retry, "nonsense")

    def test_empty_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("", encoding="utf-8")
        assert get_config(path).retry.max_attempts == 3

    def test_missing_explicit_path(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_config(tmp_path / "nope.yaml")


class TestEnvironment:

    def test_secrets_from_env(self, monkeypatch):
        monkeypatch.setenv("AR_FOLLOWUPS_MASTER_KEY", "k")
        monkeypatch.setenv("TWILIO_ACCOUNT_SID", "AC1")
        monkeypatch.setenv("SMTP_USERNAME", "mailer")
        cfg = FollowUpConfig()
        assert cfg.credentials.master_key == "k"
        assert cfg.sms.account_sid == "AC1"
        assert cfg.smtp.username == "mailer"

    def test_explicit_value_wins(self, monkeypatch):
        monkeypatch.setenv("QBO_CLIENT_ID", "from-env")
        cfg = FollowUpConfig()
        cfg.oauth.client_id = "from-yaml"
        assert cfg.oauth.client_id == "from-yaml"

"""
AR Follow-up Automation -- Configuration Module

Centralizes all configuration for the follow-up engine and the credential
manager.  Loads defaults from dataclasses, then overlays any overrides from
config.yaml.  Secrets default from environment variables so they never
need to live in the YAML file.

Usage:
    from ar_followups.config import get_config
    cfg = get_config()                         # loads config.yaml if present
    cfg = get_config("path/to/custom.yaml")    # loads a specific file
    print(cfg.retry.max_attempts)              # 3
    print(cfg.scheduler.scan_interval_seconds) # 600
"""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Optional

import yaml

# ---------------------------------------------------------------------------
# Path constants -- everything relative to the project root
# ---------------------------------------------------------------------------
_THIS_DIR = Path(__file__).resolve().parent          # ar_followups/
PROJECT_ROOT = _THIS_DIR.parent                       # repository root
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"


def _resolve(rel_path: str) -> Path:
    p = Path(rel_path)
    if not p.is_absolute():
        p = PROJECT_ROOT / p
    return p


# ===================================================================
# 1. Database
# ===================================================================

@dataclass
class DatabaseConfig:
    """Shared SQLite store.  Every worker process points at the same file."""
    path: str = "data/ar_followups.db"
    busy_timeout_ms: int = 5000

    @property
    def resolved_path(self) -> Path:
        return _resolve(self.path)


# ===================================================================
# 2. Scheduler
# ===================================================================

@dataclass
class SchedulerConfig:
    """How often the periodic jobs run."""
    scan_interval_seconds: int = 600          # Due-Window Scanner tick
    credential_sweep_interval_seconds: int = 900
    batch_limit: int = 100                    # max candidates per tick
    purge_interval_seconds: int = 24 * 3600   # ledger retention purge


# ===================================================================
# 3. Retry Policy (transient delivery failures)
# ===================================================================

@dataclass
class RetryPolicy:
    """Bounds on re-dispatching a (invoice, template) pair after a failure.

    The wait after the n-th failure is
    ``retry_backoff_minutes * backoff_multiplier ** (n - 1)``,
    capped at ``max_backoff_minutes``.
    """
    max_attempts: int = 3
    retry_backoff_minutes: int = 60
    backoff_multiplier: float = 2.0
    max_backoff_minutes: int = 24 * 60
    max_retry_age_days: int = 14              # no retries for windows older than this

    def backoff_for(self, failures: int) -> timedelta:
        """Minimum wait after ``failures`` consecutive failed attempts."""
        if failures <= 0:
            return timedelta(0)
        minutes = self.retry_backoff_minutes * (self.backoff_multiplier ** (failures - 1))
        return timedelta(minutes=min(minutes, self.max_backoff_minutes))

    @property
    def max_retry_age(self) -> timedelta:
        return timedelta(days=self.max_retry_age_days)


# ===================================================================
# 4. Dispatch
# ===================================================================

@dataclass
class DispatchConfig:
    """Dispatch worker behaviour."""
    max_workers: int = 4
    claim_timeout_minutes: int = 30           # pending claims older than this are abandoned
    catch_up_days: Optional[int] = 7          # skip first attempts for windows older than this
    worker_id: str = ""

    def __post_init__(self):
        self.worker_id = self.worker_id or f"{socket.gethostname()}:{os.getpid()}"

    @property
    def claim_timeout(self) -> timedelta:
        return timedelta(minutes=self.claim_timeout_minutes)

    @property
    def catch_up_window(self) -> Optional[timedelta]:
        if self.catch_up_days is None:
            return None
        return timedelta(days=self.catch_up_days)


# ===================================================================
# 5. Templates
# ===================================================================

@dataclass
class TemplateSettings:
    """Rendering options for reminder messages."""
    date_format: str = "%b %d, %Y"            # "Jan 10, 2025"
    currency_symbols: dict[str, str] = field(default_factory=lambda: {
        "USD": "$",
        "CAD": "$",
        "EUR": "€",
        "GBP": "£",
    })
    sms_max_length: int = 1600
    fallback_customer_name: str = "Valued Customer"


# ===================================================================
# 6. Credentials
# ===================================================================

@dataclass
class CredentialSettings:
    """Vault encryption and refresher timing."""
    master_key: str = ""                      # set via env var AR_FOLLOWUPS_MASTER_KEY
    kdf_salt: str = "ar-followups-credential-vault"
    kdf_iterations: int = 200_000
    expiry_margin_seconds: int = 300          # refresh on demand within 5 minutes of expiry
    sweep_margin_seconds: int = 900           # periodic sweep refreshes within 15 minutes
    default_expires_in: int = 3600            # access token lifetime when the payload has none
    lock_lease_seconds: int = 60              # slack on top of the worst-case refresh time
    lock_wait_seconds: float = 30.0
    lock_poll_seconds: float = 0.1
    refresh_max_attempts: int = 3
    refresh_backoff_seconds: float = 2.0

    def __post_init__(self):
        self.master_key = self.master_key or os.environ.get("AR_FOLLOWUPS_MASTER_KEY", "")


@dataclass
class OAuthSettings:
    """Accounting-system OAuth client (QuickBooks Online by default)."""
    token_url: str = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
    client_id: str = ""                       # set via env var QBO_CLIENT_ID
    client_secret: str = ""                   # set via env var QBO_CLIENT_SECRET
    timeout_seconds: float = 15.0

    def __post_init__(self):
        self.client_id = self.client_id or os.environ.get("QBO_CLIENT_ID", "")
        self.client_secret = self.client_secret or os.environ.get("QBO_CLIENT_SECRET", "")


# ===================================================================
# 7. Channel providers
# ===================================================================

@dataclass
class SMTPSettings:
    """SMTP relay for the email channel."""
    host: str = "smtp.gmail.com"
    port: int = 587
    use_tls: bool = True
    username: str = ""        # set via env var SMTP_USERNAME
    password: str = ""        # set via env var SMTP_PASSWORD
    timeout_seconds: float = 30.0

    def __post_init__(self):
        self.username = self.username or os.environ.get("SMTP_USERNAME", "")
        self.password = self.password or os.environ.get("SMTP_PASSWORD", "")


@dataclass
class SMSSettings:
    """Twilio REST settings for the SMS channel."""
    api_base_url: str = "https://api.twilio.com/2010-04-01"
    account_sid: str = ""     # set via env var TWILIO_ACCOUNT_SID
    auth_token: str = ""      # set via env var TWILIO_AUTH_TOKEN
    from_number: str = ""     # set via env var TWILIO_PHONE_NUMBER
    default_country_code: str = "1"
    timeout_seconds: float = 15.0

    def __post_init__(self):
        self.account_sid = self.account_sid or os.environ.get("TWILIO_ACCOUNT_SID", "")
        self.auth_token = self.auth_token or os.environ.get("TWILIO_AUTH_TOKEN", "")
        self.from_number = self.from_number or os.environ.get("TWILIO_PHONE_NUMBER", "")


@dataclass
class OutboxSettings:
    """Where the .eml outbox provider writes messages (dry runs)."""
    eml_dir: str = "output/eml"

    @property
    def resolved_dir(self) -> Path:
        return _resolve(self.eml_dir)


@dataclass
class SenderInfo:
    """Default FROM identity for outgoing reminder emails."""
    name: str = "Accounts Receivable"
    email: str = ""
    reply_to: str = ""

    def __post_init__(self):
        self.email = self.email or os.environ.get("BUSINESS_EMAIL", "")


# ===================================================================
# 8. Output
# ===================================================================

@dataclass
class OutputConfig:
    """Where reports are written."""
    report_dir: str = "output/reports"

    @property
    def resolved_report_dir(self) -> Path:
        return _resolve(self.report_dir)


# ===================================================================
# 9. Retention
# ===================================================================

@dataclass
class RetentionPolicy:
    """How long finished ledger rows are kept before the daily purge.

    Rows are only purged once the scanner can no longer produce a
    candidate for their pair (past both ``retry.max_retry_age`` and
    ``dispatch.catch_up_window``), so purging never re-opens a reminder.
    """
    keep_success_days: int = 90               # 'sent' / 'delivered' rows
    keep_failed_days: int = 30

    @property
    def keep_success(self) -> timedelta:
        return timedelta(days=self.keep_success_days)

    @property
    def keep_failed(self) -> timedelta:
        return timedelta(days=self.keep_failed_days)


# ===================================================================
# Master Config
# ===================================================================

@dataclass
class FollowUpConfig:
    """Top-level configuration container for AR follow-up automation."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    templates: TemplateSettings = field(default_factory=TemplateSettings)
    credentials: CredentialSettings = field(default_factory=CredentialSettings)
    oauth: OAuthSettings = field(default_factory=OAuthSettings)
    smtp: SMTPSettings = field(default_factory=SMTPSettings)
    sms: SMSSettings = field(default_factory=SMSSettings)
    outbox: OutboxSettings = field(default_factory=OutboxSettings)
    sender: SenderInfo = field(default_factory=SenderInfo)
    output: OutputConfig = field(default_factory=OutputConfig)
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)


# ===================================================================
# YAML Loading
# ===================================================================

def _apply_yaml_to_config(cfg: FollowUpConfig, data: dict) -> None:
    """Apply a parsed YAML dict onto a FollowUpConfig instance."""
    _section_map = {
        "database": cfg.database,
        "scheduler": cfg.scheduler,
        "retry": cfg.retry,
        "dispatch": cfg.dispatch,
        "templates": cfg.templates,
        "credentials": cfg.credentials,
        "oauth": cfg.oauth,
        "smtp": cfg.smtp,
        "sms": cfg.sms,
        "outbox": cfg.outbox,
        "sender": cfg.sender,
        "output": cfg.output,
        "retention": cfg.retention,
    }

    for section_key, section_obj in _section_map.items():
        if section_key in data and isinstance(data[section_key], dict):
            for attr, val in data[section_key].items():
                if hasattr(section_obj, attr):
                    setattr(section_obj, attr, val)


def get_config(yaml_path: Optional[str | Path] = None) -> FollowUpConfig:
    """Build a FollowUpConfig, optionally overlaying values from a YAML file.

    Args:
        yaml_path: Path to a config.yaml file.  If None, looks for the
                   default config.yaml at the project root.  If that file
                   doesn't exist, returns pure defaults.

    Returns:
        Fully populated FollowUpConfig instance.

    Raises:
        FileNotFoundError: If an explicit ``yaml_path`` does not exist.
    """
    cfg = FollowUpConfig()

    if yaml_path is not None and not Path(yaml_path).exists():
        raise FileNotFoundError(f"Config file not found: {yaml_path}")

    path = Path(yaml_path) if yaml_path else DEFAULT_CONFIG_PATH
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        _apply_yaml_to_config(cfg, data)

    return cfg

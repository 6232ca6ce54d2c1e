"""
AR Follow-up Automation -- Credential Refresher

Keeps every owner's accounting-system access token valid.

    valid -> nearing_expiry -> refreshing -> valid
                                          |-> revoked  (invalid_grant)

The provider rotates refresh tokens: using one invalidates it and issues
a new one.  Two workers refreshing the same owner at once would see one
succeed and the other get ``invalid_grant``, so a refresh runs under a
per-owner lease lock kept in the shared store (``refresh_locks``).  Inside
the lock the vault is re-read, and a token another worker already rotated
is returned without a network call.

The lease outlasts the slowest possible refresh (every attempt timing out
plus the backoff between them).  Should a holder overrun it anyway, two
rules keep the rotated token from being lost or wrongly revoked:

    * the new payload is written only if the vault still holds the refresh
      token that was sent (compare-and-set in one transaction)
    * a worker that took over an expired lease and then gets
      ``invalid_grant`` waits for the previous holder's write instead of
      revoking

Usage:
    refresher = CredentialRefresher(db, vault, IntuitOAuthClient(cfg.oauth), cfg.credentials)
    token = refresher.get_valid_token("realm-123")    # importer entry point
    result = refresher.sweep()                        # periodic job
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol

import requests
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .clock import Clock, SystemClock, ensure_utc, to_iso
from .config import CredentialSettings, OAuthSettings
from .errors import (
    CredentialError,
    CredentialInvalid,
    CredentialRefreshError,
    CredentialRevoked,
    FollowUpError,
)
from .models import CredentialState, token_expires_at
from .store import Database
from .vault import STATE_REVOKED, CredentialVault

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# OAuth provider boundary
# ---------------------------------------------------------------------------

class InvalidGrantError(FollowUpError):
    """The provider rejected the refresh token itself."""


class TransientOAuthError(FollowUpError):
    """The refresh call failed for a reason that may clear on retry."""


class OAuthClient(Protocol):
    def refresh(self, refresh_token: str) -> dict[str, Any]: ...


class IntuitOAuthClient:
    """Refresh-token grant against the Intuit (QuickBooks Online) token endpoint."""

    def __init__(self, settings: OAuthSettings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session or requests.Session()

    def refresh(self, refresh_token: str) -> dict[str, Any]:
        try:
            response = self.session.post(
                self.settings.token_url,
                data={"grant_type": "refresh_token", "refresh_token": refresh_token},
                auth=(self.settings.client_id, self.settings.client_secret),
                headers={"Accept": "application/json"},
                timeout=self.settings.timeout_seconds,
            )
        except requests.exceptions.RequestException as exc:
            raise TransientOAuthError(f"token endpoint unreachable: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code == 200:
            if not data.get("access_token"):
                raise TransientOAuthError("token response has no access_token")
            return data

        error = data.get("error", "")
        if response.status_code in (400, 401) and error == "invalid_grant":
            raise InvalidGrantError(data.get("error_description") or "invalid_grant")
        raise TransientOAuthError(f"token endpoint returned HTTP {response.status_code} {error}".strip())


# ---------------------------------------------------------------------------
# Refresher
# ---------------------------------------------------------------------------

@dataclass
class SweepResult:
    checked: int = 0
    refreshed: int = 0
    skipped: int = 0
    revoked: int = 0
    failed: int = 0
    errors: dict[str, str] = field(default_factory=dict)

    def summary(self) -> str:
        return (
            f"checked={self.checked} refreshed={self.refreshed} skipped={self.skipped} "
            f"revoked={self.revoked} failed={self.failed}"
        )


@dataclass
class Lease:
    holder: str
    expires_at: datetime
    # holder of an expired lease this one replaced; it may still be mid-refresh
    superseded: str = ""


class CredentialRefresher:
    """Refreshes vault credentials before they expire, one owner at a time."""

    def __init__(
        self,
        db: Database,
        vault: CredentialVault,
        oauth: OAuthClient,
        settings: Optional[CredentialSettings] = None,
        clock: Optional[Clock] = None,
        worker_id: str = "",
        request_timeout: Optional[float] = None,
    ):
        self.db = db
        self.vault = vault
        self.oauth = oauth
        self.settings = settings or vault.settings
        self.clock = clock or SystemClock()
        self.worker_id = worker_id or uuid.uuid4().hex[:12]
        if request_timeout is None:
            oauth_settings = getattr(oauth, "settings", None)
            request_timeout = getattr(oauth_settings, "timeout_seconds", OAuthSettings.timeout_seconds)
        self.request_timeout = float(request_timeout)

    @property
    def expiry_margin(self) -> timedelta:
        return timedelta(seconds=self.settings.expiry_margin_seconds)

    @property
    def sweep_margin(self) -> timedelta:
        return timedelta(seconds=self.settings.sweep_margin_seconds)

    @property
    def lease(self) -> timedelta:
        """How long a refresh lock is held before others may take it over.

        The worst-case refresh time plus ``lock_lease_seconds`` of slack.
        requests applies its timeout to connect and read separately, so
        each attempt may take twice ``request_timeout``.
        """
        attempts = max(1, self.settings.refresh_max_attempts)
        calls = attempts * 2 * self.request_timeout
        backoff = sum(self.settings.refresh_backoff_seconds * 2 ** n for n in range(attempts - 1))
        return timedelta(seconds=calls + backoff + self.settings.lock_lease_seconds)

    # ------------------------------------------------------------------
    # Importer entry points
    # ------------------------------------------------------------------

    def get_valid_credentials(self, owner_id: str) -> dict[str, Any]:
        """The owner's payload, refreshed first if it expires within the margin.

        Raises:
            CredentialNotFound / CredentialInvalid / CredentialRevoked /
            CredentialRefreshError
        """
        payload = self.vault.retrieve(owner_id)
        if self.needs_refresh(payload, self.expiry_margin):
            payload = self.refresh(owner_id, seen=payload)
        return payload

    def get_valid_token(self, owner_id: str) -> str:
        """Access token for the importer.  ``CredentialRevoked`` means reconnect."""
        payload = self.get_valid_credentials(owner_id)
        token = payload.get("access_token")
        if not token:
            raise CredentialInvalid(owner_id, "payload has no access_token")
        return str(token)

    def needs_refresh(self, payload: dict[str, Any], margin: timedelta, now: Optional[datetime] = None) -> bool:
        """True when the access token expires within ``margin`` (or its expiry is unknown)."""
        now = ensure_utc(now) if now else self.clock.now()
        expires_at = token_expires_at(payload, self.settings.default_expires_in)
        if expires_at is None:
            return True
        return ensure_utc(expires_at) - margin <= now

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(
        self,
        owner_id: str,
        force: bool = False,
        seen: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Refresh one owner's credential under the per-owner lock.

        Args:
            owner_id: Whose credential to refresh.
            force: Refresh even if the stored token is not near expiry.
            seen: The payload the caller decided to refresh from.  If the
                stored refresh token differs once the lock is held, another
                worker already rotated it and its result is returned.

        Raises:
            CredentialRevoked: The provider rejected the refresh token.
            CredentialRefreshError: Transient failures exhausted the
                retries, or the lock could not be acquired in time.
        """
        if seen is None:
            seen = self.vault.retrieve(owner_id)
        seen_token = seen.get("refresh_token")

        holder = f"{self.worker_id}:{threading.get_ident()}:{uuid.uuid4().hex[:8]}"
        lease = self._acquire_lock(owner_id, holder)
        if lease is None:
            current = self.vault.retrieve(owner_id)
            if current.get("refresh_token") != seen_token and not self.needs_refresh(current, self.expiry_margin):
                return current
            raise CredentialRefreshError(owner_id, "timed out waiting for the refresh lock")

        try:
            current = self.vault.retrieve(owner_id)
            if current.get("refresh_token") != seen_token:
                logger.info("Credential for owner %s was already rotated by another worker", owner_id)
                return current
            if not force and not self.needs_refresh(current, self.expiry_margin):
                return current
            return self._refresh_locked(owner_id, current, lease)
        finally:
            self._release_lock(owner_id, holder)

    def _refresh_locked(self, owner_id: str, payload: dict[str, Any], lease: Lease) -> dict[str, Any]:
        refresh_token = payload.get("refresh_token")
        if not refresh_token:
            self.vault.revoke(owner_id, "missing_refresh_token")
            raise CredentialRevoked(owner_id, "missing_refresh_token")

        retrying = Retrying(
            stop=stop_after_attempt(max(1, self.settings.refresh_max_attempts)),
            wait=wait_exponential(multiplier=self.settings.refresh_backoff_seconds),
            retry=retry_if_exception_type(TransientOAuthError),
            sleep=self.clock.sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            response = retrying(self.oauth.refresh, refresh_token)
        except InvalidGrantError as exc:
            current = self.vault.retrieve(owner_id)
            if current.get("refresh_token") != refresh_token:
                logger.info("Owner %s lost a rotation race; using the winner's token", owner_id)
                return current
            if lease.superseded:
                rotated = self._await_rotation(owner_id, refresh_token)
                if rotated is not None:
                    logger.info("Owner %s was rotated by expired holder %s", owner_id, lease.superseded)
                    return rotated
                raise CredentialRefreshError(
                    owner_id, f"invalid_grant while expired holder {lease.superseded} may still be refreshing",
                ) from exc
            self.vault.revoke(owner_id, "invalid_grant")
            raise CredentialRevoked(owner_id, "invalid_grant") from exc
        except TransientOAuthError as exc:
            raise CredentialRefreshError(owner_id, str(exc)) from exc

        new_payload = {**payload, **response, "issued_at": to_iso(self.clock.now())}
        if not response.get("refresh_token"):
            new_payload["refresh_token"] = refresh_token
        if not self.vault.replace(owner_id, new_payload, expected_refresh_token=refresh_token):
            logger.warning("Credential for owner %s changed during refresh; keeping the stored one", owner_id)
            return self.vault.retrieve(owner_id)
        if self.clock.now() >= lease.expires_at:
            logger.warning("Refresh of owner %s outlived its lease (%s)", owner_id, self.lease)
        logger.info("Refreshed credential for owner %s", owner_id)
        return new_payload

    def _await_rotation(self, owner_id: str, refresh_token: str) -> Optional[dict[str, Any]]:
        """Poll the vault until ``refresh_token`` is replaced, up to ``lock_wait_seconds``."""
        deadline = self.clock.now() + timedelta(seconds=self.settings.lock_wait_seconds)
        while True:
            current = self.vault.retrieve(owner_id)
            if current.get("refresh_token") != refresh_token:
                return current
            if self.clock.now() >= deadline:
                return None
            self.clock.sleep(self.settings.lock_poll_seconds)

    # ------------------------------------------------------------------
    # Lease lock
    # ------------------------------------------------------------------

    def _try_lock(self, owner_id: str, holder: str) -> Optional[Lease]:
        now = self.clock.now()
        expires = now + self.lease
        with self.db.transaction() as conn:
            prior = conn.execute(
                "SELECT holder FROM refresh_locks WHERE owner_id = ?", (owner_id,),
            ).fetchone()
            result = conn.execute(
                """INSERT INTO refresh_locks (owner_id, holder, acquired_at, expires_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(owner_id) DO UPDATE SET
                       holder = excluded.holder,
                       acquired_at = excluded.acquired_at,
                       expires_at = excluded.expires_at
                   WHERE refresh_locks.expires_at <= excluded.acquired_at""",
                (owner_id, holder, to_iso(now), to_iso(expires)),
            )
        if result.rowcount == 0:
            return None
        superseded = prior["holder"] if prior is not None and prior["holder"] != holder else ""
        if superseded:
            logger.warning("Took over the expired refresh lease of %s for owner %s", superseded, owner_id)
        return Lease(holder=holder, expires_at=expires, superseded=superseded)

    def _acquire_lock(self, owner_id: str, holder: str) -> Optional[Lease]:
        deadline = self.clock.now() + timedelta(seconds=self.settings.lock_wait_seconds)
        while True:
            lease = self._try_lock(owner_id, holder)
            if lease is not None:
                return lease
            if self.clock.now() >= deadline:
                logger.warning("Gave up waiting for the refresh lock of owner %s", owner_id)
                return None
            self.clock.sleep(self.settings.lock_poll_seconds)

    def _release_lock(self, owner_id: str, holder: str) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                "DELETE FROM refresh_locks WHERE owner_id = ? AND holder = ?",
                (owner_id, holder),
            )

    def is_refreshing(self, owner_id: str) -> bool:
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT 1 FROM refresh_locks WHERE owner_id = ? AND expires_at > ?",
                (owner_id, to_iso(self.clock.now())),
            ).fetchone()
        return row is not None

    # ------------------------------------------------------------------
    # Sweep & status
    # ------------------------------------------------------------------

    def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """Refresh every valid credential expiring within the sweep margin.

        One owner's failure is logged and counted; it never stops the sweep.
        """
        now = ensure_utc(now) if now else self.clock.now()
        result = SweepResult()
        for owner_id in self.vault.owners(state="valid"):
            result.checked += 1
            try:
                payload = self.vault.retrieve(owner_id)
                if not self.needs_refresh(payload, self.sweep_margin, now):
                    result.skipped += 1
                    continue
                self.refresh(owner_id, force=True, seen=payload)
                result.refreshed += 1
            except CredentialRevoked as exc:
                result.revoked += 1
                result.errors[owner_id] = str(exc)
                logger.warning("Owner %s must reconnect: %s", owner_id, exc)
            except CredentialError as exc:
                result.failed += 1
                result.errors[owner_id] = str(exc)
                logger.error("Credential sweep failed for owner %s: %s", owner_id, exc)
            except Exception as exc:
                result.failed += 1
                result.errors[owner_id] = str(exc)
                logger.exception("Unexpected error refreshing owner %s", owner_id)

        if result.checked:
            logger.info("Credential sweep: %s", result.summary())
        return result

    def status(self, owner_id: str) -> CredentialState:
        record = self.vault.record(owner_id)
        if record is None:
            return CredentialState.MISSING
        if record.state == STATE_REVOKED:
            return CredentialState.REVOKED
        if self.is_refreshing(owner_id):
            return CredentialState.REFRESHING
        try:
            payload = self.vault.decrypt(record)
        except CredentialInvalid:
            return CredentialState.INVALID
        if self.needs_refresh(payload, self.sweep_margin):
            return CredentialState.NEARING_EXPIRY
        return CredentialState.VALID

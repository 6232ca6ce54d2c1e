"""Tests for ar_followups.refresher -- rotation races, revocation, retries, sweep."""

import threading
import time
from datetime import datetime, timedelta, timezone

import pytest
import requests

from ar_followups.clock import SystemClock, from_iso, to_iso
from ar_followups.config import OAuthSettings
from ar_followups.errors import CredentialError, CredentialRefreshError, CredentialRevoked
from ar_followups.models import CredentialState
from ar_followups.refresher import (
    CredentialRefresher,
    IntuitOAuthClient,
    InvalidGrantError,
    TransientOAuthError,
)
from ar_followups.vault import CredentialVault


class FakeOAuth:
    """Rotating token endpoint: each refresh token works exactly once.

    ``failures`` are raised one per call before rotation; ``broken`` maps a
    refresh token to an error raised on every call with it.
    """

    def __init__(self, valid=(), failures=None, broken=None, delay=0.0, on_call=None):
        self.valid = set(valid)
        self.failures = list(failures or [])
        self.broken = dict(broken or {})
        self.delay = delay
        self.on_call = on_call
        self.calls = []
        self._issued = 0
        self._lock = threading.Lock()

    def refresh(self, refresh_token):
        with self._lock:
            self.calls.append(refresh_token)
        if self.on_call is not None:
            self.on_call(refresh_token)
        if self.delay:
            time.sleep(self.delay)
        with self._lock:
            if refresh_token in self.broken:
                raise self.broken[refresh_token]
            if self.failures:
                raise self.failures.pop(0)
            if refresh_token not in self.valid:
                raise InvalidGrantError("Token invalid")
            self.valid.discard(refresh_token)
            self._issued += 1
            new_token = f"{refresh_token}-r{self._issued}"
            self.valid.add(new_token)
            return {
                "access_token": f"at-{self._issued}",
                "refresh_token": new_token,
                "expires_in": 3600,
                "x_refresh_token_expires_in": 8726400,
            }


def _payload(issued_at, refresh_token="rt-1", access_token="at-0"):
    return {
        "access_token": access_token,
        "refresh_token": refresh_token,
        "expires_in": 3600,
        "issued_at": to_iso(issued_at),
    }


@pytest.fixture
def vault(db, config):
    return CredentialVault(db, config.credentials)


@pytest.fixture
def oauth():
    return FakeOAuth(valid={"rt-1"})


@pytest.fixture
def refresher(db, vault, oauth, config, clock):
    return CredentialRefresher(db, vault, oauth, config.credentials, clock=clock, worker_id="w1")


@pytest.fixture
def expiring(vault, clock):
    """realm-1 with an access token that expires in under five minutes."""
    vault.store("realm-1", _payload(clock.now() - timedelta(seconds=3400)))
    return "realm-1"


# ============================================================================
# On-demand access
# ============================================================================

class TestGetValidToken:

    def test_fresh_token_not_refreshed(self, refresher, vault, oauth, clock):
        vault.store("realm-1", _payload(clock.now()))
        assert refresher.get_valid_token("realm-1") == "at-0"
        assert oauth.calls == []

    def test_expiring_token_refreshed_and_rotated(self, refresher, vault, oauth, clock, expiring):
        assert refresher.get_valid_token(expiring) == "at-1"
        stored = vault.retrieve(expiring)
        assert stored["refresh_token"] == "rt-1-r1"
        assert from_iso(stored["issued_at"]) == clock.now()
        assert oauth.calls == ["rt-1"]

    def test_unknown_expiry_is_refreshed(self, refresher, vault, oauth):
        vault.store("realm-1", {"access_token": "at-0", "refresh_token": "rt-1"})
        assert refresher.get_valid_token("realm-1") == "at-1"

    def test_response_without_refresh_token_keeps_old(self, db, vault, config, clock, expiring):
        class NoRotation:
            def refresh(self, refresh_token):
                return {"access_token": "at-9", "expires_in": 3600}

        refresher = CredentialRefresher(db, vault, NoRotation(), config.credentials, clock=clock)
        refresher.get_valid_token(expiring)
        assert vault.retrieve(expiring)["refresh_token"] == "rt-1"

    def test_revoked_owner(self, refresher, vault, clock):
        vault.store("realm-1", _payload(clock.now()))
        vault.revoke("realm-1", "invalid_grant")
        with pytest.raises(CredentialRevoked):
            refresher.get_valid_token("realm-1")

    def test_needs_refresh_margin(self, refresher, clock):
        payload = _payload(clock.now() - timedelta(seconds=3400))
        assert refresher.needs_refresh(payload, timedelta(minutes=5)) is True
        assert refresher.needs_refresh(payload, timedelta(minutes=1)) is False


# ============================================================================
# Rotation races & revocation
# ============================================================================

class TestRefresh:

    def test_concurrent_refresh_calls_provider_once(self, db, vault, config):
        config.credentials.lock_poll_seconds = 0.01
        oauth = FakeOAuth(valid={"rt-1"}, delay=0.2)
        vault.store("realm-1", _payload(datetime.now(timezone.utc) - timedelta(seconds=3500)))
        refreshers = [
            CredentialRefresher(db, vault, oauth, config.credentials, clock=SystemClock(), worker_id=f"w{i}")
            for i in range(2)
        ]
        tokens, errors = [], []
        barrier = threading.Barrier(2)

        def _get(refresher):
            barrier.wait()
            try:
                tokens.append(refresher.get_valid_token("realm-1"))
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=_get, args=(r,)) for r in refreshers]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert tokens == ["at-1", "at-1"]
        assert oauth.calls == ["rt-1"]
        assert vault.record("realm-1").state == "valid"

    def test_invalid_grant_revokes(self, db, vault, config, clock, expiring):
        refresher = CredentialRefresher(db, vault, FakeOAuth(valid=set()), config.credentials, clock=clock)
        with pytest.raises(CredentialRevoked):
            refresher.get_valid_token(expiring)
        assert vault.record(expiring).state == "revoked"
        assert refresher.status(expiring) is CredentialState.REVOKED

    def test_invalid_grant_after_rotation_elsewhere_is_not_revoked(self, db, vault, config, clock, expiring):
        rotated = _payload(clock.now(), refresh_token="rt-2", access_token="at-other")

        def _other_worker_wins(refresh_token):
            vault.store(expiring, rotated)

        oauth = FakeOAuth(valid=set(), on_call=_other_worker_wins)
        refresher = CredentialRefresher(db, vault, oauth, config.credentials, clock=clock)
        assert refresher.get_valid_token(expiring) == "at-other"
        assert vault.record(expiring).state == "valid"

    def test_transient_errors_exhaust_retries(self, db, vault, config, clock, expiring):
        oauth = FakeOAuth(valid={"rt-1"}, failures=[TransientOAuthError("HTTP 503")] * 3)
        refresher = CredentialRefresher(db, vault, oauth, config.credentials, clock=clock)
        start = clock.now()
        with pytest.raises(CredentialRefreshError):
            refresher.refresh(expiring)
        assert len(oauth.calls) == 3
        # backoff 2s then 4s between the three attempts
        assert clock.now() - start == timedelta(seconds=6)
        assert vault.record(expiring).state == "valid"
        assert vault.retrieve(expiring)["refresh_token"] == "rt-1"

    def test_retries_are_logged_and_skip_invalid_grant(self, db, vault, config, clock, expiring, caplog):
        oauth = FakeOAuth(valid=set(), failures=[TransientOAuthError("HTTP 502")])
        refresher = CredentialRefresher(db, vault, oauth, config.credentials, clock=clock)
        with caplog.at_level("WARNING", logger="ar_followups.refresher"):
            with pytest.raises(CredentialRevoked):
                refresher.refresh(expiring, force=True)
        # one retry after the 502; the invalid_grant that follows is not retried
        assert len(oauth.calls) == 2
        assert "HTTP 502" in caplog.text

    def test_transient_error_then_success(self, db, vault, config, clock, expiring):
        oauth = FakeOAuth(valid={"rt-1"}, failures=[TransientOAuthError("timeout")])
        refresher = CredentialRefresher(db, vault, oauth, config.credentials, clock=clock)
        assert refresher.refresh(expiring)["access_token"] == "at-1"
        assert len(oauth.calls) == 2

    def test_missing_refresh_token_revokes(self, refresher, vault, clock):
        vault.store("realm-1", {"access_token": "at-0", "issued_at": to_iso(clock.now())})
        with pytest.raises(CredentialRevoked):
            refresher.refresh("realm-1", force=True)
        assert vault.record("realm-1").revoked_reason == "missing_refresh_token"

    def test_not_forced_skips_fresh_token(self, refresher, vault, oauth, clock):
        vault.store("realm-1", _payload(clock.now()))
        assert refresher.refresh("realm-1")["access_token"] == "at-0"
        assert oauth.calls == []


# ============================================================================
# Lease lock
# ============================================================================

class TestLock:

    def test_held_lock_times_out(self, refresher, oauth, clock, config, expiring):
        assert refresher._try_lock(expiring, "someone-else") is not None
        start = clock.now()
        with pytest.raises(CredentialRefreshError):
            refresher.refresh(expiring, force=True)
        assert oauth.calls == []
        assert clock.now() - start >= timedelta(seconds=config.credentials.lock_wait_seconds)

    def test_expired_lease_is_taken_over(self, refresher, oauth, clock, expiring):
        refresher._try_lock(expiring, "crashed-worker")
        clock.advance(seconds=refresher.lease.total_seconds() + 1)
        assert refresher.refresh(expiring, force=True)["access_token"] == "at-1"

    def test_lock_released_after_refresh(self, refresher, expiring):
        refresher.refresh(expiring, force=True)
        assert refresher.is_refreshing(expiring) is False

    def test_status_refreshing_while_locked(self, refresher, expiring):
        refresher._try_lock(expiring, "someone-else")
        assert refresher.status(expiring) is CredentialState.REFRESHING

    def test_lease_covers_slowest_refresh(self, refresher, config):
        # three attempts, each up to connect + read timeout, plus 2s and 4s of backoff
        slowest = timedelta(seconds=3 * 2 * 15.0 + 2 + 4)
        assert refresher.request_timeout == 15.0
        assert refresher.lease > slowest
        assert refresher.lease - slowest == timedelta(seconds=config.credentials.lock_lease_seconds)

    def test_holder_past_its_lease_keeps_the_rotation(self, db, vault, config, clock, expiring):
        oauth = FakeOAuth(valid={"rt-1"})
        second = CredentialRefresher(db, vault, oauth, config.credentials, clock=clock, worker_id="w2")
        outcome = {}

        class RotateThenStall:
            """Rotates at the provider, then stalls past the lease before returning."""

            def refresh(self, refresh_token):
                response = oauth.refresh(refresh_token)
                clock.advance(seconds=second.lease.total_seconds() + 1)
                try:
                    outcome["second"] = second.refresh(expiring, force=True)
                except CredentialError as exc:
                    outcome["second"] = exc
                return response

        first = CredentialRefresher(db, vault, RotateThenStall(), config.credentials, clock=clock, worker_id="w1")
        payload = first.refresh(expiring, force=True)

        assert not isinstance(outcome["second"], CredentialRevoked)
        assert isinstance(outcome["second"], CredentialRefreshError)
        assert payload["refresh_token"] == "rt-1-r1"
        assert vault.record(expiring).state == "valid"
        assert vault.retrieve(expiring)["refresh_token"] == "rt-1-r1"
        assert oauth.calls == ["rt-1", "rt-1"]

    def test_invalid_grant_after_takeover_defers_revocation(self, db, vault, config, clock, expiring):
        refresher = CredentialRefresher(db, vault, FakeOAuth(valid=set()), config.credentials, clock=clock)
        refresher._try_lock(expiring, "crashed-worker")
        clock.advance(seconds=refresher.lease.total_seconds() + 1)

        with pytest.raises(CredentialRefreshError):
            refresher.refresh(expiring, force=True)
        assert vault.record(expiring).state == "valid"

        # no expired holder left to wait for: the rejection now stands
        with pytest.raises(CredentialRevoked):
            refresher.refresh(expiring, force=True)
        assert vault.record(expiring).state == "revoked"

    def test_takeover_picks_up_late_rotation(self, db, vault, config, clock, expiring):
        rotated = _payload(clock.now(), refresh_token="rt-late", access_token="at-late")
        polls = []

        class LateWriter:
            def retrieve(self, owner_id):
                polls.append(owner_id)
                if len(polls) == 4:
                    vault.store(owner_id, rotated)
                return vault.retrieve(owner_id)

            def __getattr__(self, name):
                return getattr(vault, name)

        refresher = CredentialRefresher(db, LateWriter(), FakeOAuth(valid=set()), config.credentials, clock=clock)
        refresher._try_lock(expiring, "slow-worker")
        clock.advance(seconds=refresher.lease.total_seconds() + 1)

        assert refresher.refresh(expiring, force=True)["access_token"] == "at-late"
        assert vault.record(expiring).state == "valid"

    def test_rotation_not_written_over_reconnect(self, db, vault, config, clock, expiring):
        reconnected = _payload(clock.now(), refresh_token="rt-new-connection", access_token="at-new")

        def _reconnect(refresh_token):
            vault.store(expiring, reconnected)

        oauth = FakeOAuth(valid={"rt-1"}, on_call=_reconnect)
        refresher = CredentialRefresher(db, vault, oauth, config.credentials, clock=clock)
        assert refresher.refresh(expiring, force=True)["access_token"] == "at-new"
        assert vault.retrieve(expiring)["refresh_token"] == "rt-new-connection"


# ============================================================================
# Sweep & status
# ============================================================================

class TestSweep:

    def test_failures_are_isolated(self, db, vault, config, clock):
        now = clock.now()
        vault.store("fresh", _payload(now, refresh_token="rt-fresh"))
        vault.store("soon", _payload(now - timedelta(seconds=3000), refresh_token="rt-soon"))
        vault.store("dead", _payload(now - timedelta(seconds=3000), refresh_token="rt-dead"))
        vault.store("flaky", _payload(now - timedelta(seconds=3000), refresh_token="rt-flaky"))
        vault.store("gone", _payload(now - timedelta(seconds=3000), refresh_token="rt-gone"))
        vault.revoke("gone")
        oauth = FakeOAuth(
            valid={"rt-fresh", "rt-soon", "rt-flaky"},
            broken={"rt-flaky": TransientOAuthError("HTTP 503")},
        )
        refresher = CredentialRefresher(db, vault, oauth, config.credentials, clock=clock)

        result = refresher.sweep()

        assert (result.checked, result.refreshed, result.skipped, result.revoked, result.failed) == (4, 1, 1, 1, 1)
        assert set(result.errors) == {"dead", "flaky"}
        assert vault.retrieve("soon")["refresh_token"] == "rt-soon-r1"
        assert vault.record("dead").state == "revoked"
        assert vault.record("flaky").state == "valid"
        assert "rt-gone" not in oauth.calls

    def test_status(self, refresher, vault, db, clock):
        vault.store("ok", _payload(clock.now()))
        vault.store("near", _payload(clock.now() - timedelta(seconds=3000)))
        vault.store("broken", _payload(clock.now()))
        with db.transaction() as conn:
            conn.execute("UPDATE credentials SET ciphertext = X'00' WHERE owner_id = 'broken'")

        assert refresher.status("ok") is CredentialState.VALID
        assert refresher.status("near") is CredentialState.NEARING_EXPIRY
        assert refresher.status("broken") is CredentialState.INVALID
        assert refresher.status("missing") is CredentialState.MISSING


# ============================================================================
# Intuit client
# ============================================================================

class _Response:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class _Session:
    def __init__(self, result):
        self.result = result
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class TestIntuitOAuthClient:

    def _client(self, result):
        return IntuitOAuthClient(OAuthSettings(client_id="cid", client_secret="secret"), _Session(result))

    def test_success(self):
        client = self._client(_Response(200, {"access_token": "at", "refresh_token": "rt-2"}))
        assert client.refresh("rt-1")["refresh_token"] == "rt-2"
        _, kwargs = client.session.calls[0]
        assert kwargs["data"] == {"grant_type": "refresh_token", "refresh_token": "rt-1"}
        assert kwargs["auth"] == ("cid", "secret")

    def test_invalid_grant(self):
        client = self._client(_Response(400, {"error": "invalid_grant", "error_description": "Token invalid"}))
        with pytest.raises(InvalidGrantError):
            client.refresh("rt-1")

    @pytest.mark.parametrize("result", [
        _Response(400, {"error": "invalid_request"}),
        _Response(503, None),
        _Response(200, {"token_type": "bearer"}),
        requests.exceptions.ConnectTimeout("slow"),
    ])
    def test_transient(self, result):
        with pytest.raises(TransientOAuthError):
            self._client(result).refresh("rt-1")

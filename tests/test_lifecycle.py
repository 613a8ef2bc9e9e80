"""
tests/test_lifecycle.py -- Token issuance, verification, rotation and revocation.

All timing is driven by the FrozenClock fixture, so expiry and lease
boundaries are exact.
"""

from __future__ import annotations

import time

import pytest
from jose import jwt

from auth.errors import AuthError, ErrorKind, ValidationError
from auth.models import TOKEN_ACCESS, TOKEN_REFRESH, Token
from core.clock import FrozenClock
from auth.tokens import JwtCodec


class TestIssueTokens:
    def test_expiry_matches_configured_ttls(self, service, alice, clock) -> None:
        now = clock.now_int()
        pair = service.issue_tokens(alice.id)
        assert pair.access.expires_at == now + service.settings.jwt.access_ttl
        assert pair.refresh.expires_at == now + service.settings.jwt.refresh_ttl
        assert pair.expires_in == service.settings.jwt.access_ttl

    def test_both_records_persisted_unrevoked_with_unique_ids(self, service, alice) -> None:
        pair = service.issue_tokens(alice.id)
        assert pair.access.token_id != pair.refresh.token_id
        for record in (pair.access, pair.refresh):
            stored = service.tokens.get_token(record.token_id)
            assert stored is not None
            assert stored.revoked is False

    def test_pair_shares_session_and_carries_claims(self, service, alice) -> None:
        pair = service.issue_tokens(alice.id)
        access = jwt.get_unverified_claims(pair.access_token)
        refresh = jwt.get_unverified_claims(pair.refresh_token)
        assert access["sid"] == refresh["sid"] == pair.access.session_id
        assert access["type"] == TOKEN_ACCESS
        assert refresh["type"] == TOKEN_REFRESH
        assert access["sub"] == str(alice.id)
        assert access["iss"] == "restwarden"
        assert access["aud"] == "restwarden-api-v1"

    def test_repeated_issuance_never_reuses_ids(self, service, alice) -> None:
        ids = set()
        for _ in range(5):
            pair = service.issue_tokens(alice.id)
            ids.update({pair.access.token_id, pair.refresh.token_id})
        assert len(ids) == 10

    @pytest.mark.parametrize("bad", [0, -3, "1", None, True, 1.5])
    def test_malformed_user_id_raises(self, service, bad) -> None:
        with pytest.raises(ValidationError) as exc_info:
            service.issue_tokens(bad)
        assert "user_id" in exc_info.value.errors

    def test_unknown_or_inactive_user_raises(self, service, add_user) -> None:
        inactive = add_user(service, "bob", ["subscriber"], active=False)
        with pytest.raises(ValidationError):
            service.issue_tokens(9999)
        with pytest.raises(ValidationError):
            service.issue_tokens(inactive.id)


class TestVerify:
    def test_valid_access_token_returns_record(self, service, alice) -> None:
        pair = service.issue_tokens(alice.id)
        record = service.lifecycle.verify(pair.access_token)
        assert isinstance(record, Token)
        assert record.token_id == pair.access.token_id

    def test_expiry_boundary_is_exclusive(self, service, alice, clock) -> None:
        pair = service.issue_tokens(alice.id)
        exp = pair.access.expires_at

        clock.set(exp - 1)
        assert isinstance(service.lifecycle.verify(pair.access_token), Token)

        clock.set(exp)
        assert service.lifecycle.verify(pair.access_token).kind is ErrorKind.AUTH_EXPIRED

        clock.set(exp + 1)
        assert service.lifecycle.verify(pair.access_token).kind is ErrorKind.AUTH_EXPIRED

    def test_clock_skew_extends_acceptance(self, make_service, clock, add_user) -> None:
        svc = make_service(jwt={"clock_skew": 30})
        user = add_user(svc, "skewed", ["subscriber"])
        pair = svc.issue_tokens(user.id)
        clock.set(pair.access.expires_at + 29)
        assert isinstance(svc.lifecycle.verify(pair.access_token), Token)
        clock.set(pair.access.expires_at + 30)
        assert svc.lifecycle.verify(pair.access_token).kind is ErrorKind.AUTH_EXPIRED

    def test_expiry_is_judged_by_injected_clock_near_real_time(self, make_service, add_user) -> None:
        clock = FrozenClock(time.time() - 4000)
        svc = make_service(clock=clock)
        user = add_user(svc, "late", ["subscriber"])
        pair = svc.issue_tokens(user.id)
        clock.set(time.time())
        assert svc.lifecycle.verify(pair.access_token).kind is ErrorKind.AUTH_EXPIRED

    def test_clock_skew_applies_near_real_time(self, make_service, add_user) -> None:
        clock = FrozenClock(time.time() - 3610)
        svc = make_service(clock=clock, jwt={"clock_skew": 60})
        user = add_user(svc, "skew-now", ["subscriber"])
        pair = svc.issue_tokens(user.id)
        clock.set(pair.access.expires_at + 10)
        assert isinstance(svc.lifecycle.verify(pair.access_token), Token)

    def test_missing_exp_is_invalid(self, service, alice) -> None:
        pair = service.issue_tokens(alice.id)
        claims = jwt.get_unverified_claims(pair.access_token)
        del claims["exp"]
        assert service.lifecycle.verify(service.codec.encode(claims)).kind is ErrorKind.AUTH_INVALID

    def test_token_issued_in_the_future_is_invalid(self, service, alice, clock) -> None:
        pair = service.issue_tokens(alice.id)
        clock.advance(-10)
        assert service.lifecycle.verify(pair.access_token).kind is ErrorKind.AUTH_INVALID

    def test_refresh_token_rejected_as_access(self, service, alice) -> None:
        pair = service.issue_tokens(alice.id)
        result = service.lifecycle.verify(pair.refresh_token, TOKEN_ACCESS)
        assert result.kind is ErrorKind.AUTH_INVALID

    def test_tampered_signature_is_invalid(self, service, alice) -> None:
        pair = service.issue_tokens(alice.id)
        header, payload, signature = pair.access_token.split(".")
        flipped = signature[:-4] + ("AAAA" if not signature.endswith("AAAA") else "BBBB")
        result = service.lifecycle.verify(f"{header}.{payload}.{flipped}")
        assert result.kind is ErrorKind.AUTH_INVALID

    def test_token_signed_with_another_key_is_invalid(self, service, alice, other_rsa_keys) -> None:
        private_pem, public_pem = other_rsa_keys
        foreign = JwtCodec(private_pem, public_pem, "RS256", "restwarden", "restwarden-api-v1")
        pair = service.issue_tokens(alice.id)
        forged = foreign.encode(jwt.get_unverified_claims(pair.access_token))
        assert service.lifecycle.verify(forged).kind is ErrorKind.AUTH_INVALID

    def test_wrong_audience_or_issuer_is_invalid(self, service, alice, rsa_keys) -> None:
        private_pem, public_pem = rsa_keys
        pair = service.issue_tokens(alice.id)
        claims = jwt.get_unverified_claims(pair.access_token)
        for issuer, audience in (("someone-else", "restwarden-api-v1"), ("restwarden", "other-api")):
            codec = JwtCodec(private_pem, public_pem, "RS256", issuer, audience)
            forged = codec.encode({**claims, "iss": issuer, "aud": audience})
            assert service.lifecycle.verify(forged).kind is ErrorKind.AUTH_INVALID

    def test_garbage_is_invalid(self, service) -> None:
        assert service.lifecycle.verify("not.a.jwt").kind is ErrorKind.AUTH_INVALID

    def test_revoked_token_is_revoked(self, service, alice) -> None:
        pair = service.issue_tokens(alice.id)
        service.revoke(pair.access.token_id)
        assert service.lifecycle.verify(pair.access_token).kind is ErrorKind.AUTH_REVOKED

    def test_unknown_record_counts_as_revoked(self, service, alice, clock) -> None:
        pair = service.issue_tokens(alice.id)
        service.tokens.delete_expired_tokens(cutoff=clock.now_int() + 10**9)
        assert service.lifecycle.verify(pair.access_token).kind is ErrorKind.AUTH_REVOKED

    def test_store_decides_when_cache_is_empty(self, service, alice) -> None:
        pair = service.issue_tokens(alice.id)
        service.revoke(pair.access.token_id)
        service.cache.close()
        assert service.lifecycle.verify(pair.access_token).kind is ErrorKind.AUTH_REVOKED


class TestLease:
    def test_lease_enforced_only_when_requested(self, service, alice, clock) -> None:
        pair = service.issue_tokens(alice.id)
        lease_ttl = service.settings.jwt.lease_ttl

        clock.advance(lease_ttl - 1)
        assert isinstance(service.lifecycle.verify(pair.access_token, lease=True), Token)

        clock.advance(1)
        result = service.lifecycle.verify(pair.access_token, lease=True)
        assert result.kind is ErrorKind.AUTH_EXPIRED
        # Primary expiry is untouched.
        assert isinstance(service.lifecycle.verify(pair.access_token), Token)

    def test_check_lease_for_identity_timestamps(self, service, clock) -> None:
        now = clock.now_int()
        assert service.lifecycle.check_lease(now) is None
        assert service.lifecycle.check_lease(None) is None
        stale = service.lifecycle.check_lease(now - service.settings.jwt.lease_ttl)
        assert stale.kind is ErrorKind.AUTH_EXPIRED


class TestRefresh:
    def test_rotation_succeeds_once(self, service, alice, clock) -> None:
        pair = service.issue_tokens(alice.id)
        clock.advance(60)
        rotated = service.refresh(pair.refresh_token)

        assert rotated.refresh.token_id != pair.refresh.token_id
        assert rotated.refresh.session_id == pair.refresh.session_id
        old = service.tokens.get_token(pair.refresh.token_id)
        assert old.revoked is True
        assert old.replaced_by == rotated.refresh.token_id
        assert isinstance(service.lifecycle.verify(rotated.access_token), Token)

        clock.advance(service.settings.jwt.idempotency_grace + 1)
        replay = service.refresh(pair.refresh_token)
        assert isinstance(replay, AuthError)
        assert replay.kind is ErrorKind.AUTH_REVOKED

    def test_replay_revokes_every_token_of_the_user(self, service, alice, clock) -> None:
        pair = service.issue_tokens(alice.id)
        other_session = service.issue_tokens(alice.id)
        rotated = service.refresh(pair.refresh_token)
        clock.advance(service.settings.jwt.idempotency_grace + 1)

        service.refresh(pair.refresh_token)

        for raw in (rotated.access_token, other_session.access_token):
            assert service.lifecycle.verify(raw).kind is ErrorKind.AUTH_REVOKED
        assert service.refresh(rotated.refresh_token).kind is ErrorKind.AUTH_REVOKED

    def test_replay_without_cascade_when_disabled(self, make_service, clock, add_user) -> None:
        svc = make_service(jwt={"revoke_on_replay": False})
        user = add_user(svc, "carol", ["subscriber"])
        pair = svc.issue_tokens(user.id)
        rotated = svc.refresh(pair.refresh_token)
        clock.advance(svc.settings.jwt.idempotency_grace + 1)

        assert svc.refresh(pair.refresh_token).kind is ErrorKind.AUTH_REVOKED
        assert isinstance(svc.lifecycle.verify(rotated.access_token), Token)

    def test_retry_inside_grace_returns_same_successor(self, service, alice, clock) -> None:
        pair = service.issue_tokens(alice.id)
        first = service.refresh(pair.refresh_token)
        clock.advance(2)
        retry = service.refresh(pair.refresh_token)

        assert retry.refresh_token == first.refresh_token
        assert retry.access.token_id != first.access.token_id
        assert isinstance(service.lifecycle.verify(retry.access_token), Token)

    def test_lost_compare_and_set_is_a_benign_retry(self, service, alice, clock) -> None:
        pair = service.issue_tokens(alice.id)
        # Another request wins the race between our read and our write.
        winner_access, winner_refresh = service.lifecycle._new_records(
            alice.id, pair.refresh.session_id, clock.now_int()
        )
        assert service.tokens.rotate_refresh(pair.refresh.token_id, [winner_access, winner_refresh], clock.now_int())
        assert not service.tokens.rotate_refresh(pair.refresh.token_id, [], clock.now_int())

        loser = service.refresh(pair.refresh_token)
        assert loser.refresh.token_id == winner_refresh.token_id

    def test_retry_after_successor_was_rotated_is_revoked(self, service, alice, clock) -> None:
        pair = service.issue_tokens(alice.id)
        first = service.refresh(pair.refresh_token)
        service.refresh(first.refresh_token)
        assert service.refresh(pair.refresh_token).kind is ErrorKind.AUTH_REVOKED

    def test_logged_out_refresh_token_is_revoked_without_cascade(self, service, alice) -> None:
        pair = service.issue_tokens(alice.id)
        other = service.issue_tokens(alice.id)
        service.revoke(pair.refresh.token_id)

        assert service.refresh(pair.refresh_token).kind is ErrorKind.AUTH_REVOKED
        assert isinstance(service.lifecycle.verify(other.access_token), Token)

    def test_access_token_cannot_refresh(self, service, alice) -> None:
        pair = service.issue_tokens(alice.id)
        assert service.refresh(pair.access_token).kind is ErrorKind.AUTH_INVALID

    def test_expired_refresh_token(self, service, alice, clock) -> None:
        pair = service.issue_tokens(alice.id)
        clock.set(pair.refresh.expires_at)
        assert service.refresh(pair.refresh_token).kind is ErrorKind.AUTH_EXPIRED

    def test_inactive_user_cannot_refresh(self, service, alice) -> None:
        pair = service.issue_tokens(alice.id)
        service.users.set_active(alice.id, False)
        assert service.refresh(pair.refresh_token).kind is ErrorKind.AUTH_INVALID

    @pytest.mark.parametrize("bad", ["", "   ", None])
    def test_missing_refresh_token_raises(self, service, bad) -> None:
        with pytest.raises(ValidationError):
            service.refresh(bad)


class TestRevocation:
    def test_revoke_token_is_idempotent(self, service, alice) -> None:
        pair = service.issue_tokens(alice.id)
        assert service.lifecycle.revoke_token(pair.access.token_id) is True
        assert service.lifecycle.revoke_token(pair.access.token_id) is False
        assert service.lifecycle.revoke_token("no-such-token") is False

    def test_revocation_is_mirrored_into_cache(self, service, alice) -> None:
        pair = service.issue_tokens(alice.id)
        service.revoke(pair.access.token_id)
        assert service.cache.get(f"revoked:{pair.access.token_id}") is True

    def test_revoke_session_leaves_other_sessions(self, service, alice) -> None:
        first = service.issue_tokens(alice.id)
        second = service.issue_tokens(alice.id)
        assert service.lifecycle.revoke_session(first.access.session_id) == 2
        assert service.lifecycle.verify(first.access_token).kind is ErrorKind.AUTH_REVOKED
        assert isinstance(service.lifecycle.verify(second.access_token), Token)

    def test_revoke_user_tokens(self, service, alice) -> None:
        service.issue_tokens(alice.id)
        service.issue_tokens(alice.id)
        assert service.lifecycle.revoke_user_tokens(alice.id) == 4
        assert service.tokens.list_active_tokens(alice.id, service.clock.now_int()) == []

    def test_revoke_dispatches_on_id_type(self, service, alice) -> None:
        _, key = service.create_api_key(alice.id, "ci")
        assert service.revoke(key.id) is True
        assert service.tokens.get_api_key(key.id).is_revoked is True
        with pytest.raises(ValidationError):
            service.revoke(True)
        with pytest.raises(ValidationError):
            service.revoke("")


class TestSessions:
    def test_rotation_keeps_one_entry_per_session(self, service, alice) -> None:
        first = service.issue_tokens(alice.id)
        second = service.issue_tokens(alice.id)
        rotated = service.refresh(first.refresh_token)
        sessions = service.lifecycle.list_sessions(alice.id)
        assert sorted(t.token_id for t in sessions) == sorted([rotated.refresh.token_id, second.refresh.token_id])

    def test_revoked_session_disappears(self, service, alice) -> None:
        pair = service.issue_tokens(alice.id)
        service.lifecycle.revoke_session(pair.access.session_id)
        assert service.lifecycle.list_sessions(alice.id) == []


class TestSweep:
    def test_sweep_respects_retention_grace(self, service, alice, clock) -> None:
        pair = service.issue_tokens(alice.id)
        grace = service.settings.jwt.retention_grace

        clock.set(pair.access.expires_at + grace)
        assert service.lifecycle.sweep_expired() == 0

        clock.advance(1)
        assert service.lifecycle.sweep_expired() == 1
        assert service.tokens.get_token(pair.access.token_id) is None
        assert service.tokens.get_token(pair.refresh.token_id) is not None

        clock.set(pair.refresh.expires_at + grace + 1)
        assert service.sweep() == 1

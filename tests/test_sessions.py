"""Session lifecycle: login, refresh, validation, logout and lockout."""

import asyncio
import threading
from datetime import timedelta

import pytest
import structlog

from tokenward.service.errors import (
    AccountLockedError,
    AuthenticationError,
    InvalidRequestError,
    InvalidTokenError,
    TokenNotFoundError,
    UserNotFoundError,
)
from tokenward.service.login_attempts import ClientInfo
from tokenward.service.sessions import SessionManager, current_principal, extract_bearer
from tokenward.service.signer import TokenSigner
from tokenward.storage.models import Role, TokenKind, TokenStatus

from conftest import TEST_PASSWORD


class SteppingClock:
    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now


def _statuses(store, user_id):
    return sorted((t.kind, t.status) for t in store.list_tokens(user_id))


@pytest.mark.asyncio
async def test_login_refresh_logout_lifecycle(sessions, store, make_user):
    user = make_user("a@x.com")
    login = await sessions.authenticate("a@x.com", TEST_PASSWORD)
    assert _statuses(store, user.id) == [
        (TokenKind.ACCESS, TokenStatus.ACTIVE),
        (TokenKind.REFRESH, TokenStatus.ACTIVE),
    ]

    refreshed = await sessions.refresh(login.refresh_token)
    assert store.find_token(refreshed.access_token).status == TokenStatus.ACTIVE
    assert store.find_token(login.access_token).status == TokenStatus.INACTIVE
    assert store.find_token(login.refresh_token).status == TokenStatus.INACTIVE
    assert (await sessions.validate(login.access_token)).valid is False

    await sessions.logout(refreshed.access_token)
    assert (await sessions.validate(refreshed.access_token)).valid is False


class TestAuthenticate:
    @pytest.mark.asyncio
    async def test_issues_pair_and_stores_both(self, sessions, make_user, store):
        user = make_user()
        pair = await sessions.authenticate("alice@example.com", TEST_PASSWORD)

        assert pair.token_type == "Bearer"
        assert pair.access_token != pair.refresh_token
        active = {t.value: t.kind for t in store.find_active_tokens(user.id)}
        assert active == {
            pair.access_token: TokenKind.ACCESS,
            pair.refresh_token: TokenKind.REFRESH,
        }

    @pytest.mark.asyncio
    async def test_claims_carry_role_and_kind(self, sessions, make_user, signer):
        make_user(role=Role.ADMIN)
        pair = await sessions.authenticate("alice@example.com", TEST_PASSWORD)

        access = signer.decode(pair.access_token)
        refresh = signer.decode(pair.refresh_token)
        assert access["sub"] == "alice@example.com"
        assert access["role"] == "ADMIN"
        assert access["token_type"] == "access"
        assert refresh["token_type"] == "refresh"
        assert refresh["exp"] - refresh["iat"] == int(timedelta(days=7).total_seconds())

    @pytest.mark.asyncio
    async def test_second_login_revokes_first_pair(self, sessions, make_user, store):
        user = make_user()
        first = await sessions.authenticate("alice@example.com", TEST_PASSWORD)
        second = await sessions.authenticate("ALICE@example.com ", TEST_PASSWORD)

        assert (await sessions.validate(first.access_token)).valid is False
        assert (await sessions.validate(first.refresh_token)).valid is False
        assert (await sessions.validate(second.access_token)).valid is True
        assert len(store.find_active_tokens(user.id)) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("email,password", [("", TEST_PASSWORD), ("a@example.com", "")])
    async def test_blank_input(self, sessions, email, password):
        with pytest.raises(InvalidRequestError):
            await sessions.authenticate(email, password)

    @pytest.mark.asyncio
    async def test_failures_leave_no_tokens(self, sessions, make_user, store):
        user = make_user()
        with pytest.raises(AuthenticationError):
            await sessions.authenticate("alice@example.com", "wrong-password")
        with pytest.raises(UserNotFoundError):
            await sessions.authenticate("ghost@example.com", TEST_PASSWORD)
        assert store.list_tokens(user.id) == []

    def test_concurrent_logins_leave_one_active_pair(self, sessions, make_user, store):
        user = make_user()
        barrier = threading.Barrier(6)
        pairs = []
        errors = []

        def worker():
            barrier.wait()
            try:
                pairs.append(
                    asyncio.run(sessions.authenticate("alice@example.com", TEST_PASSWORD))
                )
            except Exception as exc:  # surfaced by the assertion below
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        active = store.find_active_tokens(user.id)
        assert sorted(t.kind for t in active) == [TokenKind.ACCESS, TokenKind.REFRESH]
        winners = [
            p for p in pairs if {p.access_token, p.refresh_token} == {t.value for t in active}
        ]
        assert len(winners) == 1
        for pair in pairs:
            if pair is winners[0]:
                continue
            assert asyncio.run(sessions.validate(pair.access_token)).valid is False


class TestRefresh:
    @pytest.mark.asyncio
    async def test_rotation_reissues_full_pair(self, sessions, make_user, store):
        user = make_user()
        login = await sessions.authenticate("alice@example.com", TEST_PASSWORD)

        refreshed = await sessions.refresh(login.refresh_token)

        assert refreshed.refresh_token != login.refresh_token
        assert refreshed.access_token != login.access_token
        assert (await sessions.validate(login.access_token)).valid is False
        assert (await sessions.validate(login.refresh_token, TokenKind.REFRESH)).valid is False
        assert (await sessions.validate(refreshed.access_token, TokenKind.ACCESS)).valid is True
        assert _statuses(store, user.id).count((TokenKind.ACCESS, TokenStatus.ACTIVE)) == 1

    @pytest.mark.asyncio
    async def test_used_refresh_token_cannot_be_replayed(self, sessions, make_user):
        make_user()
        login = await sessions.authenticate("alice@example.com", TEST_PASSWORD)
        await sessions.refresh(login.refresh_token)
        with pytest.raises(InvalidTokenError):
            await sessions.refresh(login.refresh_token)

    @pytest.mark.asyncio
    async def test_without_rotation_refresh_token_is_kept(
        self, ledger, signer, credentials, make_user, store
    ):
        manager = SessionManager(ledger, signer, credentials, rotate_refresh=False)
        user = make_user()
        login = await manager.authenticate("alice@example.com", TEST_PASSWORD)

        first = await manager.refresh(login.refresh_token)
        second = await manager.refresh(login.refresh_token)

        assert first.refresh_token == second.refresh_token == login.refresh_token
        assert (await manager.validate(first.access_token)).valid is False
        assert (await manager.validate(second.access_token)).valid is True
        active = store.find_active_tokens(user.id)
        assert {t.value for t in active} == {login.refresh_token, second.access_token}

    @pytest.mark.asyncio
    async def test_blank_and_unknown(self, sessions):
        with pytest.raises(InvalidRequestError):
            await sessions.refresh("   ")
        with pytest.raises(TokenNotFoundError):
            await sessions.refresh("never-issued")

    @pytest.mark.asyncio
    async def test_access_token_is_not_a_refresh_token(self, sessions, make_user):
        make_user()
        login = await sessions.authenticate("alice@example.com", TEST_PASSWORD)
        with pytest.raises(TokenNotFoundError):
            await sessions.refresh(login.access_token)

    @pytest.mark.asyncio
    async def test_expired_refresh_rejected(self, ledger, credentials, make_user):
        clock = SteppingClock()
        signer = TokenSigner(
            "stepping-clock-signing-key-0123456789abcdef",
            issuer="tokenward",
            audience="tokenward-clients",
            clock=clock,
        )
        manager = SessionManager(
            ledger, signer, credentials, refresh_ttl=timedelta(minutes=10)
        )
        make_user()
        login = await manager.authenticate("alice@example.com", TEST_PASSWORD)

        clock.now += 600
        with pytest.raises(InvalidTokenError):
            await manager.refresh(login.refresh_token)

    def test_concurrent_refresh_has_one_winner(self, sessions, make_user, store):
        user = make_user()
        login = asyncio.run(sessions.authenticate("alice@example.com", TEST_PASSWORD))
        barrier = threading.Barrier(5)
        outcomes = []

        def worker():
            barrier.wait()
            try:
                outcomes.append(asyncio.run(sessions.refresh(login.refresh_token)))
            except InvalidTokenError as exc:
                outcomes.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [o for o in outcomes if not isinstance(o, Exception)]
        assert len(outcomes) == 5
        assert len(winners) == 1
        assert {t.value for t in store.find_active_tokens(user.id)} == {
            winners[0].access_token,
            winners[0].refresh_token,
        }


class TestValidate:
    @pytest.mark.asyncio
    async def test_valid_token_reports_subject_and_roles(self, sessions, make_user):
        make_user(role=Role.ADMIN)
        login = await sessions.authenticate("alice@example.com", TEST_PASSWORD)

        result = await sessions.validate(login.access_token, TokenKind.ACCESS)

        assert result.valid is True
        assert result.subject == "alice@example.com"
        assert result.roles == ["ADMIN"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", [None, "", "   ", "garbage"])
    async def test_unknown_values_fail_closed(self, sessions, value):
        result = await sessions.validate(value)
        assert (result.valid, result.subject, result.roles) == (False, None, [])

    @pytest.mark.asyncio
    async def test_wrong_kind_is_invalid(self, sessions, make_user):
        make_user()
        login = await sessions.authenticate("alice@example.com", TEST_PASSWORD)
        assert (await sessions.validate(login.access_token, TokenKind.REFRESH)).valid is False

    @pytest.mark.asyncio
    async def test_revoked_token_still_reports_owner(self, sessions, make_user):
        make_user()
        login = await sessions.authenticate("alice@example.com", TEST_PASSWORD)
        await sessions.disable(login.access_token)

        result = await sessions.validate(login.access_token)

        assert result.valid is False
        assert result.subject == "alice@example.com"

    @pytest.mark.asyncio
    async def test_ledger_row_without_signature_is_invalid(self, sessions, make_user, ledger):
        from tokenward.storage.models import Token

        user = make_user()
        await ledger.save(Token.new("opaque-value", TokenKind.ACCESS, user))
        assert (await sessions.validate("opaque-value")).valid is False


class TestBearer:
    @pytest.mark.parametrize(
        "header,expected",
        [
            ("Bearer abc", "abc"),
            ("bearer   abc  ", "abc"),
            ("Basic abc", None),
            ("Bearer ", None),
            ("", None),
            (None, None),
        ],
    )
    def test_extract_bearer(self, header, expected):
        assert extract_bearer(header) == expected

    @pytest.mark.asyncio
    async def test_binds_principal_and_log_context(self, sessions, make_user):
        user = make_user()
        login = await sessions.authenticate("alice@example.com", TEST_PASSWORD)

        principal = await sessions.authenticate_bearer(f"Bearer {login.access_token}")

        assert principal.user_id == user.id
        assert principal.is_admin is False
        assert current_principal.get() == principal
        assert structlog.contextvars.get_contextvars()["user_id"] == user.id

    @pytest.mark.asyncio
    async def test_missing_and_invalid(self, sessions, make_user):
        with pytest.raises(AuthenticationError) as missing:
            await sessions.authenticate_bearer(None)
        assert missing.value.reason == "missing_token"
        assert not isinstance(missing.value, InvalidTokenError)

        make_user()
        login = await sessions.authenticate("alice@example.com", TEST_PASSWORD)
        with pytest.raises(InvalidTokenError):
            await sessions.authenticate_bearer(f"Bearer {login.refresh_token}")


class TestLogout:
    @pytest.mark.asyncio
    async def test_logout_is_idempotent_and_clears_context(self, sessions, make_user, store):
        make_user()
        login = await sessions.authenticate("alice@example.com", TEST_PASSWORD)
        await sessions.authenticate_bearer(f"Bearer {login.access_token}")

        await sessions.logout(login.access_token)
        await sessions.logout(login.access_token)
        await sessions.logout("never-issued")
        await sessions.logout(None)

        assert current_principal.get() is None
        assert "user_id" not in structlog.contextvars.get_contextvars()
        assert store.find_token(login.access_token).status == TokenStatus.INACTIVE
        assert (await sessions.validate(login.refresh_token)).valid is True

    @pytest.mark.asyncio
    async def test_revoke_all_counts(self, sessions, make_user):
        user = make_user()
        login = await sessions.authenticate("alice@example.com", TEST_PASSWORD)
        assert await sessions.revoke_all(user.id) == 2
        assert await sessions.revoke_all(user.id) == 0
        assert (await sessions.validate(login.refresh_token)).valid is False


class TestLockout:
    @pytest.mark.asyncio
    async def test_locks_after_threshold_failures(self, sessions, make_user, attempts):
        user = make_user()
        client = ClientInfo(ip_address="203.0.113.9", user_agent="pytest")
        for _ in range(3):
            with pytest.raises(AuthenticationError):
                await sessions.authenticate("alice@example.com", "wrong-password", client)

        with pytest.raises(AccountLockedError) as excinfo:
            await sessions.authenticate("alice@example.com", TEST_PASSWORD, client)

        assert excinfo.value.status_code == 403
        reasons = [a.failure_reason for a in attempts.recent_attempts(user.id)]
        assert reasons.count("account_locked") == 1
        assert reasons.count("bad_credentials") == 3

    @pytest.mark.asyncio
    async def test_lockout_can_be_disabled(self, ledger, signer, credentials, attempts, make_user):
        manager = SessionManager(
            ledger, signer, credentials, attempts=attempts, lockout_enabled=False
        )
        make_user()
        for _ in range(4):
            with pytest.raises(AuthenticationError):
                await manager.authenticate("alice@example.com", "wrong-password")
        assert (await manager.authenticate("alice@example.com", TEST_PASSWORD)).access_token

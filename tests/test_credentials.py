import pytest

from tokenward.service.credentials import PASSWORD_ALGO, require_credentials
from tokenward.service.errors import (
    AuthenticationError,
    InvalidRequestError,
    UserNotFoundError,
)
from tokenward.storage.models import UserStatus

from conftest import TEST_PASSWORD


class TestRequireCredentials:
    @pytest.mark.parametrize(
        "email,password,field",
        [
            ("", "pw", "email"),
            ("   ", "pw", "email"),
            (None, "pw", "email"),
            ("alice@example.com", "", "password"),
            ("alice@example.com", "   ", "password"),
            ("alice@example.com", None, "password"),
        ],
    )
    def test_blank_input_rejected(self, email, password, field):
        with pytest.raises(InvalidRequestError) as excinfo:
            require_credentials(email, password)
        assert excinfo.value.detail["field"] == field
        assert excinfo.value.status_code == 400

    def test_email_normalized(self):
        assert require_credentials("  Alice@Example.COM ", "pw") == "alice@example.com"


class TestVerifyCredentials:
    def test_success_returns_user(self, credentials, make_user):
        user = make_user()
        assert credentials.verify_credentials("ALICE@example.com", TEST_PASSWORD).id == user.id

    def test_unknown_user(self, credentials):
        with pytest.raises(UserNotFoundError) as excinfo:
            credentials.verify_credentials("nobody@example.com", TEST_PASSWORD)
        assert isinstance(excinfo.value, AuthenticationError)
        assert excinfo.value.reason == "user_not_found"

    def test_wrong_password(self, credentials, make_user):
        make_user()
        with pytest.raises(AuthenticationError) as excinfo:
            credentials.verify_credentials("alice@example.com", "not-the-password")
        assert excinfo.value.reason == "bad_credentials"
        assert not isinstance(excinfo.value, UserNotFoundError)

    def test_inactive_account(self, credentials, make_user, store):
        user = make_user()
        store.set_user_status(user.id, UserStatus.INACTIVE)
        with pytest.raises(AuthenticationError) as excinfo:
            credentials.verify_credentials("alice@example.com", TEST_PASSWORD)
        assert excinfo.value.reason == "account_inactive"

    def test_missing_password_record(self, credentials, store):
        store.create_user("nopw@example.com")
        with pytest.raises(AuthenticationError) as excinfo:
            credentials.verify_credentials("nopw@example.com", TEST_PASSWORD)
        assert excinfo.value.reason == "bad_credentials"

    def test_blank_rejected_before_storage(self, cheap_hasher):
        from tokenward.service.credentials import CredentialVerifier

        class ExplodingStore:
            def get_user_by_email(self, email):
                raise AssertionError("storage must not be touched")

        verifier = CredentialVerifier(ExplodingStore(), hasher=cheap_hasher)
        with pytest.raises(InvalidRequestError):
            verifier.verify_credentials("", "pw")


class TestPasswordHashing:
    def test_hash_is_salted_argon2id(self, credentials):
        first, algo = credentials.hash_password("same-password")
        second, _ = credentials.hash_password("same-password")
        assert algo == PASSWORD_ALGO
        assert first.startswith("$argon2id$")
        assert first != second

    def test_unknown_algo_fails_verification(self, credentials, store):
        user = store.create_user("legacy@example.com")
        digest, _ = credentials.hash_password(TEST_PASSWORD)
        store.save_password(user.id, digest, "bcrypt")
        assert credentials.verify_password(user.id, TEST_PASSWORD) is False

    def test_corrupt_hash_fails_verification(self, credentials, store):
        user = store.create_user("corrupt@example.com")
        store.save_password(user.id, "not-a-hash", PASSWORD_ALGO)
        assert credentials.verify_password(user.id, TEST_PASSWORD) is False

    def test_set_password_rejects_blank(self, credentials, store):
        user = store.create_user("blank@example.com")
        with pytest.raises(InvalidRequestError):
            credentials.set_password(user.id, "  ")

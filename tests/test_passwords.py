"""Tests for argon2id password hashing behind the password policy."""

import pytest

from dunnoauth.service.errors import PolicyViolation
from dunnoauth.service.passwords import PasswordVerifier

from conftest import PASSWORD


class TestHash:
    def test_hash_is_argon2id_and_salted(self, passwords):
        first = passwords.hash(PASSWORD)
        second = passwords.hash(PASSWORD)

        assert first.startswith("$argon2id$")
        assert first != second
        assert PASSWORD not in first

    @pytest.mark.parametrize(
        "weak",
        ["short1!", "longenough!!", "longenough12", "12345678", ""],
    )
    def test_weak_password_rejected(self, passwords, weak):
        with pytest.raises(PolicyViolation) as excinfo:
            passwords.hash(weak)
        assert excinfo.value.detail == {"field": "password"}


class TestVerify:
    def test_correct_password_verifies(self, passwords):
        stored = passwords.hash(PASSWORD)
        assert passwords.verify(stored, PASSWORD) is True

    def test_wrong_password_returns_false(self, passwords):
        stored = passwords.hash(PASSWORD)
        assert passwords.verify(stored, "s3cret!!43") is False

    def test_malformed_hash_returns_false(self, passwords):
        assert passwords.verify("not-a-hash", PASSWORD) is False
        assert passwords.verify("", PASSWORD) is False


class TestRehash:
    def test_hash_with_other_parameters_needs_rehash(self, settings, passwords):
        stronger = PasswordVerifier(settings.model_copy(update={"argon2_time_cost": 2}))
        stored = passwords.hash(PASSWORD)

        assert passwords.needs_rehash(stored) is False
        assert stronger.needs_rehash(stored) is True

    def test_garbage_hash_needs_rehash(self, passwords):
        assert passwords.needs_rehash("garbage") is True

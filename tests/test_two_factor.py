"""Tests for TOTP enrollment, verification and recovery codes."""

from urllib.parse import parse_qs, urlparse

import pytest

from dunnoauth.service.errors import (
    InvalidCredentials,
    InvalidTwoFactorCode,
    NotFoundError,
    RecoveryCodesUnavailable,
    TwoFactorAlreadyEnabled,
    TwoFactorNotEnabled,
    TwoFactorSetupNotStarted,
)
from dunnoauth.service.two_factor import generate_recovery_codes, generate_secret

from conftest import PASSWORD, totp_for, wrong_totp_for


async def _enroll(two_factor, user, clock):
    enrollment = await two_factor.enable(user.id)
    codes = await two_factor.verify(user.id, totp_for(enrollment.secret, clock))
    return enrollment, codes


class TestEnable:
    async def test_enable_stores_disabled_secret(self, two_factor, store, user):
        enrollment = await two_factor.enable(user.id)
        record = store.get_user(user.id)

        assert record.two_factor_secret == enrollment.secret
        assert record.two_factor_enabled is False
        assert record.recovery_codes == []

    async def test_provisioning_uri(self, two_factor, user):
        enrollment = await two_factor.enable(user.id)
        parsed = urlparse(enrollment.uri)
        query = parse_qs(parsed.query)

        assert parsed.scheme == "otpauth"
        assert parsed.netloc == "totp"
        assert "dunnoAuth" in parsed.path
        assert query["secret"] == [enrollment.secret]
        assert query["issuer"] == ["dunNotes"]
        assert query["algorithm"] == ["SHA512"]
        assert query.get("digits", ["6"]) == ["6"]
        assert query.get("period", ["30"]) == ["30"]

    async def test_qr_code_is_svg(self, two_factor, user):
        enrollment = await two_factor.enable(user.id)
        assert "<svg" in enrollment.qr_code_svg

    async def test_enable_twice_before_verify_replaces_secret(self, two_factor, store, user):
        first = await two_factor.enable(user.id)
        second = await two_factor.enable(user.id)

        assert first.secret != second.secret
        assert store.get_user(user.id).two_factor_secret == second.secret

    async def test_enable_when_enabled_rejected(self, two_factor, user, clock):
        await _enroll(two_factor, user, clock)
        with pytest.raises(TwoFactorAlreadyEnabled):
            await two_factor.enable(user.id)

    async def test_unknown_user(self, two_factor):
        with pytest.raises(NotFoundError):
            await two_factor.enable("missing")


class TestVerify:
    async def test_verify_without_enrollment(self, two_factor, user):
        with pytest.raises(TwoFactorSetupNotStarted):
            await two_factor.verify(user.id, "123456")

    async def test_correct_code_enables_and_issues_ten_codes(self, two_factor, store, user, clock):
        _, codes = await _enroll(two_factor, user, clock)

        record = store.get_user(user.id)
        assert record.two_factor_enabled is True
        assert len(codes) == 10
        assert len(set(codes)) == 10
        assert record.recovery_codes == codes
        assert all(len(code) == 10 and code.isalnum() and code.upper() == code for code in codes)

    async def test_wrong_code_changes_nothing(self, two_factor, store, user, clock):
        enrollment = await two_factor.enable(user.id)

        with pytest.raises(InvalidTwoFactorCode):
            await two_factor.verify(user.id, wrong_totp_for(enrollment.secret, clock))

        record = store.get_user(user.id)
        assert record.two_factor_enabled is False
        assert record.two_factor_secret == enrollment.secret
        assert record.recovery_codes == []

    async def test_previous_step_code_rejected(self, two_factor, user, clock):
        enrollment = await two_factor.enable(user.id)
        stale = totp_for(enrollment.secret, clock)
        clock.advance(30)

        with pytest.raises(InvalidTwoFactorCode):
            await two_factor.verify(user.id, stale)

    async def test_reverify_replaces_recovery_codes(self, two_factor, store, user, clock):
        enrollment, first = await _enroll(two_factor, user, clock)
        second = await two_factor.verify(user.id, totp_for(enrollment.secret, clock))

        assert set(first).isdisjoint(second)
        assert store.get_user(user.id).recovery_codes == second


class TestDisable:
    async def test_disable_requires_enabled(self, two_factor, user):
        with pytest.raises(TwoFactorNotEnabled):
            await two_factor.disable(user.id, "123456", PASSWORD)

    async def test_disable_requires_password(self, two_factor, store, user, clock):
        enrollment, _ = await _enroll(two_factor, user, clock)
        with pytest.raises(InvalidCredentials):
            await two_factor.disable(user.id, totp_for(enrollment.secret, clock), "wr0ng!!pass")
        assert store.get_user(user.id).two_factor_enabled is True

    async def test_disable_requires_code(self, two_factor, store, user, clock):
        enrollment, _ = await _enroll(two_factor, user, clock)
        with pytest.raises(InvalidTwoFactorCode):
            await two_factor.disable(user.id, wrong_totp_for(enrollment.secret, clock), PASSWORD)
        assert store.get_user(user.id).two_factor_enabled is True

    async def test_disable_clears_everything(self, two_factor, store, user, clock):
        enrollment, _ = await _enroll(two_factor, user, clock)
        await two_factor.disable(user.id, totp_for(enrollment.secret, clock), PASSWORD)

        record = store.get_user(user.id)
        assert record.two_factor_secret is None
        assert record.two_factor_enabled is False
        assert record.recovery_codes == []


class TestRecoveryCodes:
    async def test_consume_reduces_set_by_one(self, two_factor, store, user, clock):
        _, codes = await _enroll(two_factor, user, clock)

        assert await two_factor.use_recovery_code(user.id, f"  {codes[3]}\n") is True
        assert len(store.get_user(user.id).recovery_codes) == 9
        assert await two_factor.use_recovery_code(user.id, codes[3]) is False
        assert len(store.get_user(user.id).recovery_codes) == 9

    async def test_unknown_code_returns_false(self, two_factor, store, user, clock):
        _, codes = await _enroll(two_factor, user, clock)

        assert await two_factor.use_recovery_code(user.id, "NOTACODE00") is False
        assert store.get_user(user.id).recovery_codes == codes

    async def test_match_is_case_sensitive(self, two_factor, user, clock):
        _, codes = await _enroll(two_factor, user, clock)
        lowered = codes[0].lower()
        if lowered != codes[0]:
            assert await two_factor.use_recovery_code(user.id, lowered) is False

    async def test_no_codes_left(self, two_factor, user):
        with pytest.raises(RecoveryCodesUnavailable):
            await two_factor.use_recovery_code(user.id, "ANYTHING00")

    async def test_exhausting_codes(self, two_factor, user, clock):
        _, codes = await _enroll(two_factor, user, clock)
        for code in codes:
            assert await two_factor.use_recovery_code(user.id, code) is True
        with pytest.raises(RecoveryCodesUnavailable):
            await two_factor.use_recovery_code(user.id, codes[0])


class TestStatusAndCheck:
    async def test_status_transitions(self, two_factor, user, clock):
        status = await two_factor.status(user.id)
        assert (status.enabled, status.configured, status.recovery_codes_remaining) == (False, False, 0)

        enrollment = await two_factor.enable(user.id)
        status = await two_factor.status(user.id)
        assert (status.enabled, status.configured) == (False, True)

        await two_factor.verify(user.id, totp_for(enrollment.secret, clock))
        status = await two_factor.status(user.id)
        assert (status.enabled, status.configured, status.recovery_codes_remaining) == (True, True, 10)

    async def test_check_code_only_for_enabled_accounts(self, two_factor, user, clock):
        enrollment = await two_factor.enable(user.id)
        assert await two_factor.check_code(user.id, totp_for(enrollment.secret, clock)) is False

        await two_factor.verify(user.id, totp_for(enrollment.secret, clock))
        assert await two_factor.check_code(user.id, totp_for(enrollment.secret, clock)) is True
        assert await two_factor.check_code(user.id, wrong_totp_for(enrollment.secret, clock)) is False
        assert await two_factor.check_code(user.id, "") is False


def test_secret_carries_256_bits():
    secret = generate_secret()
    assert len(secret) == 52
    assert "=" not in secret


def test_recovery_codes_are_uppercase_alphanumeric():
    codes = generate_recovery_codes(10)
    assert len(codes) == 10
    assert all(code.isalnum() and code == code.upper() for code in codes)

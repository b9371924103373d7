"""
登出原因分类测试
"""
import pytest

from core.sign_out import SignOutClass, SignOutPolicy, SignOutReason


class TestSignOutPolicy:

    @pytest.mark.parametrize("reason", list(SignOutReason))
    def test_each_reason_belongs_to_exactly_one_class(self, reason):
        flags = [
            SignOutPolicy.is_immediate(reason),
            SignOutPolicy.is_temporary_guest(reason),
            SignOutPolicy.classify(reason) is SignOutClass.BACKEND,
        ]
        assert flags.count(True) == 1

    @pytest.mark.parametrize("reason", [
        SignOutReason.ACCOUNT_DELETED,
        SignOutReason.CLIENT_REMOVED,
        SignOutReason.SESSION_EXPIRED,
        SignOutReason.MULTIPLE_TABS,
    ])
    def test_immediate_reasons_skip_backend(self, reason):
        assert SignOutPolicy.is_immediate(reason)
        assert not SignOutPolicy.requires_backend_logout(reason)

    def test_user_requested_is_temporary_guest_class(self):
        assert SignOutPolicy.classify(SignOutReason.USER_REQUESTED) is SignOutClass.TEMPORARY_GUEST
        assert SignOutPolicy.requires_backend_logout(SignOutReason.USER_REQUESTED)

    def test_classify_accepts_raw_value(self):
        assert SignOutPolicy.classify("expired") is SignOutClass.IMMEDIATE

    def test_unknown_reason_raises(self):
        with pytest.raises(ValueError):
            SignOutPolicy.classify("nope")

# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tests for the error taxonomy and secret redaction."""
from __future__ import annotations

import pytest
from snap2vm.core.exceptions import (
    AuthError,
    ConflictError,
    Fatal,
    MountError,
    NotFoundError,
    PresentationError,
    RegistrationError,
    Snap2VmError,
    StageError,
    VMwareError,
    format_exception_for_cli,
    wrap_fatal,
)


@pytest.mark.unit
class TestExceptionHierarchy:
    def test_base_exception_creation(self):
        err = Snap2VmError(code=1, msg="Test error")

        assert err.code == 1
        assert err.msg == "Test error"
        assert err.cause is None
        assert err.context == {}

    def test_fatal_exception(self):
        err = Fatal(code=2, msg="Fatal error")

        assert isinstance(err, Snap2VmError)
        assert err.code == 2

    def test_vmware_exception(self):
        err = VMwareError(msg="vSphere connection failed")

        assert isinstance(err, Snap2VmError)
        assert "vSphere" in str(err)

    @pytest.mark.parametrize(
        "cls,code",
        [
            (AuthError, 10),
            (NotFoundError, 11),
            (ConflictError, 12),
            (PresentationError, 13),
            (MountError, 14),
            (RegistrationError, 15),
        ],
    )
    def test_taxonomy_default_codes(self, cls, code):
        err = cls("boom")

        assert isinstance(err, Snap2VmError)
        assert err.code == code
        assert err.msg == "boom"

    def test_taxonomy_accepts_context(self):
        err = NotFoundError("snapshot missing", context={"snapshot": "PG-Veeam.1"})

        assert err.context == {"snapshot": "PG-Veeam.1"}

    def test_exception_with_context(self):
        err = Snap2VmError(code=1, msg="Error").with_context(vm_name="sql01", operation="register")

        assert err.context["vm_name"] == "sql01"
        assert err.context["operation"] == "register"

    def test_multiline_message_collapsed(self):
        err = Snap2VmError(msg="line one\n   line two")

        assert err.msg == "line one line two"


@pytest.mark.unit
class TestStageError:
    def test_carries_stage_and_cause(self):
        cause = MountError("no datastore")
        err = StageError("mount datastores", cause)

        assert err.stage == "mount datastores"
        assert err.cause is cause
        assert err.code == 14
        assert str(err) == "mount datastores: no datastore"

    def test_foreign_cause_gets_generic_code(self):
        err = StageError("clone volumes", RuntimeError("socket closed"))

        assert err.code == 1
        assert "socket closed" in str(err)


@pytest.mark.security
class TestSecretRedaction:
    def test_password_redacted_in_context(self):
        err = Snap2VmError(code=1, msg="Auth failed").with_context(
            username="admin",
            password="super_secret_123",
            host="vcenter.local",
        )

        d = err.to_dict()

        assert d["context"]["password"] == "***REDACTED***"
        assert d["context"]["username"] == "admin"
        assert d["context"]["host"] == "vcenter.local"

    def test_secret_in_nested_context(self):
        err = Snap2VmError(code=1, msg="Error").with_context(
            array={"api_token": "T-123", "endpoint": "fa01"},
        )

        d = err.to_dict()

        assert d["context"]["array"]["api_token"] == "***REDACTED***"
        assert d["context"]["array"]["endpoint"] == "fa01"

    def test_cli_message_redacts_context(self):
        err = AuthError("login rejected", context={"session_id": "abc", "user": "admin"})

        text = format_exception_for_cli(err, verbose=1)

        assert "abc" not in text
        assert "user='admin'" in text


@pytest.mark.unit
class TestExitCodes:
    def test_valid_exit_codes_kept(self):
        for code in [0, 1, 2, 127, 255]:
            assert Snap2VmError(code=code, msg="Test").code == code

    def test_out_of_range_codes_clamped(self):
        assert Snap2VmError(code=256, msg="high").code == 255
        assert Snap2VmError(code=-1, msg="low").code == 1

    def test_wrap_fatal_defaults_to_usage_code(self):
        err = wrap_fatal("bad config", path="/etc/snap2vm.yaml")

        assert isinstance(err, Fatal)
        assert err.code == 2
        assert err.context == {"path": "/etc/snap2vm.yaml"}

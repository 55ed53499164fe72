"""Tests for the gatebot exception hierarchy."""

import pytest

from gatebot.exceptions import (
    CredentialError,
    ErrorCategory,
    GatebotError,
    HandlerError,
    InvalidBundleError,
    PluginLoadError,
    TransportError,
)


class TestCategories:

    def test_connection_errors_are_transient(self):
        assert CredentialError("x").category == ErrorCategory.TRANSIENT
        assert TransportError("x").is_retryable is True

    def test_plugin_errors_are_permanent(self):
        for cls in (InvalidBundleError, PluginLoadError, HandlerError):
            err = cls("x")
            assert err.category == ErrorCategory.PERMANENT
            assert err.is_retryable is False

    def test_category_override(self):
        err = TransportError("bad image", category=ErrorCategory.PERMANENT)
        assert err.is_retryable is False

    def test_all_derive_from_base(self):
        for cls in (CredentialError, TransportError, InvalidBundleError, PluginLoadError, HandlerError):
            assert issubclass(cls, GatebotError)


class TestContext:

    def test_transport_status_in_context(self):
        err = TransportError("GET /gateway failed", status=401)
        assert err.status == 401
        assert err.context["status"] == 401
        assert "status=401" in str(err)

    def test_bundle_name_recorded(self):
        err = InvalidBundleError("two roots", bundle="weather.zip")
        assert err.bundle == "weather.zip"
        assert "bundle=weather.zip" in str(err)

    def test_handler_error_fields(self):
        err = HandlerError("boom", plugin="echo", command_type="say")
        assert err.plugin == "echo"
        assert err.command_type == "say"
        assert err.context == {"plugin": "echo", "command_type": "say"}

    def test_default_module(self):
        assert CredentialError("x").module == "token"
        assert TransportError("x", module="gateway").module == "gateway"
        assert "[module=plugins.bundles]" in str(InvalidBundleError("x"))

    def test_str_falls_back_to_class_name(self):
        assert str(GatebotError()) == "GatebotError"

    def test_str_lists_module_then_context(self):
        err = PluginLoadError("bad manifest", plugin="weather")
        assert str(err) == "bad manifest [module=plugins, plugin=weather]"
        assert err.plugin == "weather"

    def test_missing_field_is_none(self):
        assert TransportError("x").status is None
        assert "status" not in TransportError("x").context

    def test_raise_and_catch_as_base(self):
        with pytest.raises(GatebotError):
            raise CredentialError("token endpoint down")

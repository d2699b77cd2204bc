"""Tests for error sanitization and the error taxonomy."""

from __future__ import annotations

import pytest

from cloudflare_operator.exceptions import (
    AlreadyExistsError,
    ConflictVersionError,
    ErrorClass,
    NotFoundError,
    OwnershipConflictError,
    RetryExhaustedError,
    SecretMaterialLostError,
    TransientError,
    ValidationError,
    classify,
    is_terminal,
    reason_for,
)
from cloudflare_operator.utils.errors import (
    sanitize_error_message,
    sanitize_exception,
)


class TestSanitizeErrorMessage:
    """Test cases for sanitize_error_message function."""

    def test_sanitize_bearer_token(self):
        """Test that bearer tokens are sanitized."""
        message = "Request failed: Authorization: Bearer abcdef123456"
        result = sanitize_error_message(message)
        assert "abcdef123456" not in result
        assert "[REDACTED]" in result

    def test_sanitize_tunnel_secret(self):
        """Test that tunnel secrets are sanitized."""
        message = 'create failed: {"tunnel_secret": "c2VjcmV0c2VjcmV0c2VjcmV0"}'
        result = sanitize_error_message(message)
        assert "c2VjcmV0c2VjcmV0c2VjcmV0" not in result

    def test_sanitize_credentials_file(self):
        """Test that a credentials file body is sanitized."""
        message = 'bad credentials {"AccountTag":"a","TunnelSecret":"Zm9vYmFy","TunnelID":"t"}'
        result = sanitize_error_message(message)
        assert "Zm9vYmFy" not in result

    def test_sanitize_api_token(self):
        """Test that API tokens are sanitized."""
        result = sanitize_error_message("api_token=tok_12345")
        assert "tok_12345" not in result

    def test_no_double_redaction(self):
        """Test that an already redacted value is left alone."""
        result = sanitize_error_message("token: [REDACTED]")
        assert result.count("[REDACTED]") == 1

    def test_plain_message_unchanged(self):
        """Test that messages without secrets are unchanged."""
        message = "Tunnel web not found"
        assert sanitize_error_message(message) == message

    def test_sanitize_exception(self):
        """Test sanitizing an exception."""
        result = sanitize_exception(TransientError("Bearer abcdef123456 rejected"))
        assert "abcdef123456" not in result


class TestTaxonomy:
    """Test cases for error classification."""

    @pytest.mark.parametrize(
        "error,expected",
        [
            (NotFoundError("x"), ErrorClass.NOT_FOUND),
            (AlreadyExistsError("x"), ErrorClass.CONFLICT),
            (ConflictVersionError("x"), ErrorClass.CONFLICT),
            (TransientError("x"), ErrorClass.OTHER),
            (ValueError("x"), ErrorClass.OTHER),
        ],
    )
    def test_classify(self, error, expected):
        """Test the coarse error classes."""
        assert classify(error) is expected

    def test_terminal_errors(self):
        """Test which errors stop retrying."""
        assert is_terminal(ValidationError("x"))
        assert is_terminal(SecretMaterialLostError("web", "tunnel-1"))
        assert is_terminal(OwnershipConflictError("web.example.com", "a", "b"))
        assert not is_terminal(TransientError("x"))
        assert not is_terminal(RetryExhaustedError(5, None))
        assert not is_terminal(NotFoundError("x"))

    def test_reasons(self):
        """Test the stable condition reasons."""
        assert reason_for(ValidationError("x")) == "InvalidConfig"
        assert reason_for(SecretMaterialLostError("web")) == "SecretMaterialLost"
        assert reason_for(OwnershipConflictError("r", "a", "b")) == "OwnershipConflict"
        assert reason_for(RetryExhaustedError(5, None)) == "ConflictRetriesExhausted"
        assert reason_for(TransientError("x")) == "TransientError"
        assert reason_for(RuntimeError("x")) == "APIError"

    def test_secret_material_lost_message(self):
        """Test that the message tells the operator what to do."""
        error = SecretMaterialLostError("web", "tunnel-1")
        assert "manual intervention" in str(error)
        assert error.external_id == "tunnel-1"

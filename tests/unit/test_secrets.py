"""Tests for Kubernetes secrets utilities."""

from __future__ import annotations

import base64

import pytest

from cloudflare_operator.constants import LABEL_MANAGED_BY, MANAGED_BY_VALUE
from cloudflare_operator.exceptions import ValidationError
from cloudflare_operator.utils.secrets import (
    build_secret,
    decode_secret_data,
    decode_secret_value,
    get_secret_value,
)


class TestBuildSecret:
    """Test cases for build_secret function."""

    def test_build_secret(self):
        """Test building an Opaque secret with encoded data."""
        secret = build_secret("default", "web-tunnel-credentials", {"credentials.json": "{}"})

        assert secret["kind"] == "Secret"
        assert secret["type"] == "Opaque"
        assert secret["metadata"]["namespace"] == "default"
        assert secret["metadata"]["labels"] == {LABEL_MANAGED_BY: MANAGED_BY_VALUE}
        assert base64.b64decode(secret["data"]["credentials.json"]) == b"{}"
        assert "finalizers" not in secret["metadata"]
        assert "ownerReferences" not in secret["metadata"]

    def test_build_secret_with_metadata(self):
        """Test labels, annotations, owner references and finalizers."""
        owner = {"apiVersion": "v1", "kind": "Tunnel", "name": "web", "uid": "uid-1"}

        secret = build_secret(
            "default",
            "s",
            {},
            labels={"app": "web"},
            annotations={"note": "x"},
            owner_references=[owner],
            finalizers=["example.io/finalizer"],
        )

        assert secret["metadata"]["labels"]["app"] == "web"
        assert secret["metadata"]["labels"][LABEL_MANAGED_BY] == MANAGED_BY_VALUE
        assert secret["metadata"]["annotations"] == {"note": "x"}
        assert secret["metadata"]["ownerReferences"] == [owner]
        assert secret["metadata"]["finalizers"] == ["example.io/finalizer"]


class TestDecodeSecretData:
    """Test cases for decoding secret data."""

    def test_decode_base64(self):
        """Test decoding base64 values."""
        assert decode_secret_value(base64.b64encode(b"value").decode()) == "value"

    def test_decode_bytes(self):
        """Test decoding bytes values."""
        assert decode_secret_value(b"value") == "value"

    def test_not_base64_is_returned_as_is(self):
        """Test that plain values pass through."""
        assert decode_secret_value("not base64!") == "not base64!"

    def test_string_data_is_merged(self):
        """Test that stringData is included."""
        secret = {"data": {"a": base64.b64encode(b"1").decode()}, "stringData": {"b": "2"}}

        assert decode_secret_data(secret) == {"a": "1", "b": "2"}

    def test_empty_secret(self):
        """Test a secret without data."""
        assert decode_secret_data({"data": None}) == {}


class TestGetSecretValue:
    """Test cases for get_secret_value function."""

    def test_get_secret_value_success(self, store):
        """Test successfully getting a secret value."""
        store.add(build_secret("default", "cloudflare-secrets", {"CLOUDFLARE_API_TOKEN": "token"}))

        assert get_secret_value(store, "default", "cloudflare-secrets", "CLOUDFLARE_API_TOKEN") == "token"

    def test_missing_secret(self, store):
        """Test that a missing secret is a validation error."""
        with pytest.raises(ValidationError, match="not found in namespace"):
            get_secret_value(store, "default", "cloudflare-secrets", "CLOUDFLARE_API_TOKEN")

    def test_missing_key(self, store):
        """Test that a missing key is a validation error."""
        store.add(build_secret("default", "cloudflare-secrets", {"other": "x"}))

        with pytest.raises(ValidationError, match="Key 'CLOUDFLARE_API_TOKEN' not found"):
            get_secret_value(store, "default", "cloudflare-secrets", "CLOUDFLARE_API_TOKEN")

"""Tests for shared models."""

from __future__ import annotations

import json

import pytest

from cloudflare_operator.constants import OPERATOR_NAMESPACE
from cloudflare_operator.models import (
    ConfigFragment,
    IngressRule,
    LifecycleResult,
    ObjectRef,
    TunnelCredentials,
    TunnelSettings,
    owner_reference,
    resource_namespace,
)

from .conftest import make_tunnel


class TestObjectRef:
    """Test cases for ObjectRef."""

    def test_string_form(self):
        """Test namespaced and cluster-scoped string forms."""
        assert str(ObjectRef("TunnelBinding", "default", "web")) == "TunnelBinding/default/web"
        assert str(ObjectRef("ClusterTunnel", None, "edge")) == "ClusterTunnel/edge"

    def test_empty_namespace_is_cluster_scoped(self):
        """Test that an empty namespace is the same identity as None."""
        assert ObjectRef("ClusterTunnel", "", "edge") == ObjectRef("ClusterTunnel", None, "edge")

    @pytest.mark.parametrize("value", ["TunnelBinding/default/web", "ClusterTunnel/edge"])
    def test_parse(self, value):
        """Test parsing the string form."""
        assert str(ObjectRef.parse(value)) == value

    @pytest.mark.parametrize("value", ["", "web", "a//b", "a/b/c/d"])
    def test_parse_invalid(self, value):
        """Test that malformed references are rejected."""
        with pytest.raises(ValueError):
            ObjectRef.parse(value)

    def test_from_object(self):
        """Test building a reference from an object."""
        assert ObjectRef.from_object(make_tunnel()) == ObjectRef("Tunnel", "default", "web")

    def test_to_dict(self):
        """Test that cluster-scoped references omit the namespace."""
        assert ObjectRef("ClusterTunnel", None, "edge").to_dict() == {"kind": "ClusterTunnel", "name": "edge"}


class TestConfigFragment:
    """Test cases for ConfigFragment."""

    def test_from_dict_restores_rules_and_settings(self):
        """Test restoring a stored fragment."""
        fragment = ConfigFragment(
            source=ObjectRef("Tunnel", "default", "web"),
            generation=2,
            settings=TunnelSettings(fallback_target="http://x:80", warp_routing=True),
            rules=[IngressRule(hostname="a.example.com", service="http://a:80", path="/p")],
        )

        restored = ConfigFragment.from_dict(json.loads(json.dumps(fragment.to_dict())))

        assert restored == fragment

    def test_same_content_ignores_timestamp(self):
        """Test that only the update timestamp is ignored."""
        source = ObjectRef("TunnelBinding", "default", "web")
        a = ConfigFragment(source=source, rules=[], updated_at="t1")
        b = ConfigFragment(source=source, rules=[], updated_at="t2")
        c = ConfigFragment(source=source, rules=None, updated_at="t1")

        assert a.same_content(b)
        assert not a.same_content(c)


class TestTunnelCredentials:
    """Test cases for TunnelCredentials."""

    def test_credentials_file(self):
        """Test the cloudflared credentials file document."""
        credentials = TunnelCredentials("account-1", "tunnel-1", "c2VjcmV0", "web")

        data = json.loads(credentials.to_credentials_file())

        assert data == {"AccountTag": "account-1", "TunnelID": "tunnel-1", "TunnelSecret": "c2VjcmV0", "TunnelName": "web"}
        assert TunnelCredentials.from_credentials_file(credentials.to_credentials_file()) == credentials

    def test_repr_hides_secret(self):
        """Test that the secret never appears in repr."""
        assert "c2VjcmV0" not in repr(TunnelCredentials("account-1", "tunnel-1", "c2VjcmV0"))


class TestHelpers:
    """Test cases for model helpers."""

    def test_resource_namespace(self):
        """Test namespaced and cluster-scoped owners."""
        assert resource_namespace(make_tunnel()) == "default"
        assert resource_namespace(make_tunnel(namespace=None, kind="ClusterTunnel")) == OPERATOR_NAMESPACE

    def test_owner_reference(self):
        """Test the owner reference fields."""
        tunnel = make_tunnel()
        tunnel["metadata"]["uid"] = "uid-1"

        ref = owner_reference(tunnel)

        assert ref["kind"] == "Tunnel"
        assert ref["uid"] == "uid-1"
        assert ref["controller"] is True
        assert ref["blockOwnerDeletion"] is True

    def test_lifecycle_result(self):
        """Test the success check."""
        assert LifecycleResult(outcome="Succeeded").succeeded
        assert not LifecycleResult(outcome="Failed").succeeded

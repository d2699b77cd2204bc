"""Tests for Kubernetes event utilities."""

from __future__ import annotations

from unittest.mock import patch

from cloudflare_operator.utils.events import (
    emit_config_synced,
    emit_deletion_pending,
    emit_event,
    emit_ownership_conflict,
    emit_reconcile_failed,
    emit_reconcile_started,
    emit_secret_material_lost,
    emit_tunnel_adopted,
    emit_tunnel_created,
    emit_tunnel_deleted,
    emit_validate_failed,
)

BODY = {
    "apiVersion": "networking.cloudflare-operator.io/v1alpha2",
    "kind": "Tunnel",
    "metadata": {"name": "web", "namespace": "default", "uid": "uid-1"},
}


class TestEmitEvent:
    """Test cases for emit_event function."""

    @patch("cloudflare_operator.utils.events.kopf.event")
    def test_emit_event_normal(self, mock_event):
        """Test emitting normal event."""
        emit_event(BODY, "TestReason", "Test message")

        mock_event.assert_called_once_with(
            BODY,
            reason="TestReason",
            message="Test message",
            type="Normal",
        )

    @patch("cloudflare_operator.utils.events.kopf.event")
    def test_emit_event_warning(self, mock_event):
        """Test emitting warning event."""
        emit_event(BODY, "TestReason", "Test message", type_="Warning")

        mock_event.assert_called_once_with(
            BODY,
            reason="TestReason",
            message="Test message",
            type="Warning",
        )

    @patch("cloudflare_operator.utils.events.kopf.event")
    def test_emit_event_sanitizes_message(self, mock_event):
        """Test that secrets never reach an event."""
        emit_event(BODY, "TestReason", "call failed: Bearer abcdef123456")

        assert "abcdef123456" not in mock_event.call_args.kwargs["message"]


class TestSpecificEvents:
    """Test cases for the specific event helpers."""

    @patch("cloudflare_operator.utils.events.kopf.event")
    def test_emit_reconcile_started(self, mock_event):
        """Test emitting reconcile started event."""
        emit_reconcile_started(BODY)

        mock_event.assert_called_once()
        assert mock_event.call_args.kwargs["reason"] == "ReconcileStarted"
        assert mock_event.call_args.kwargs["type"] == "Normal"

    @patch("cloudflare_operator.utils.events.kopf.event")
    def test_warning_events(self, mock_event):
        """Test that failure events are warnings."""
        emit_reconcile_failed(BODY, "failed")
        emit_validate_failed(BODY, "invalid")
        emit_ownership_conflict(BODY, "owned by someone else")
        emit_secret_material_lost(BODY, "lost")

        reasons = [call.kwargs["reason"] for call in mock_event.call_args_list]
        types = {call.kwargs["type"] for call in mock_event.call_args_list}
        assert reasons == ["ReconcileFailed", "ValidateFailed", "OwnershipConflict", "SecretMaterialLost"]
        assert types == {"Warning"}

    @patch("cloudflare_operator.utils.events.kopf.event")
    def test_tunnel_events(self, mock_event):
        """Test the tunnel lifecycle events."""
        emit_tunnel_created(BODY, "tunnel-1")
        emit_tunnel_adopted(BODY, "tunnel-1")
        emit_tunnel_deleted(BODY, "tunnel-1")

        reasons = [call.kwargs["reason"] for call in mock_event.call_args_list]
        assert reasons == ["TunnelCreated", "TunnelAdopted", "TunnelDeleted"]
        assert all("tunnel-1" in call.kwargs["message"] for call in mock_event.call_args_list)

    @patch("cloudflare_operator.utils.events.kopf.event")
    def test_emit_config_synced(self, mock_event):
        """Test emitting configuration synced event."""
        emit_config_synced(BODY, "tunnel-1", 7)

        assert mock_event.call_args.kwargs["reason"] == "ConfigurationSynced"
        assert "version 7" in mock_event.call_args.kwargs["message"]

    @patch("cloudflare_operator.utils.events.kopf.event")
    def test_emit_deletion_pending(self, mock_event):
        """Test emitting deletion pending event."""
        emit_deletion_pending(BODY, "quiesce-workload")

        assert mock_event.call_args.kwargs["reason"] == "DeletionPending"
        assert "quiesce-workload" in mock_event.call_args.kwargs["message"]

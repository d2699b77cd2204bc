"""Tests for configuration fragment aggregation."""

from __future__ import annotations

import itertools

import pytest

from cloudflare_operator.constants import KIND_CONFIG_MAP, SYNC_ERROR, SYNC_PENDING, SYNC_SYNCED
from cloudflare_operator.models import ConfigFragment, IngressRule, ObjectRef, TunnelSettings
from cloudflare_operator.reconcile.aggregator import (
    CONTENT_HASH_KEY,
    ConfigAggregator,
    config_map_name,
    merge_rules,
)
from cloudflare_operator.reconcile.retry import ConflictRetryUpdater

from .conftest import FakeStore

NAMESPACE = "cloudflare-operator-system"
TUNNEL = ObjectRef("Tunnel", "default", "edge")
WEB = ObjectRef("TunnelBinding", "default", "web")
API = ObjectRef("TunnelBinding", "default", "api")
DOCS = ObjectRef("TunnelBinding", "docs", "site")


def rules_fragment(source: ObjectRef, *hostnames: str, priority: int = 100) -> ConfigFragment:
    return ConfigFragment(
        source=source,
        generation=1,
        rules=[IngressRule(hostname=h, service=f"http://{h}:80", priority=priority) for h in hostnames],
    )


def make_aggregator(store) -> ConfigAggregator:
    return ConfigAggregator(store, ConflictRetryUpdater(store, delay=0, sleep=lambda _: None), NAMESPACE)


class TestMergeRules:
    """Test cases for merge_rules."""

    def test_orders_by_priority_then_hostname(self):
        """Test the rule ordering."""
        fragments = {
            str(WEB): rules_fragment(WEB, "b.example.com", "a.example.com"),
            str(API): rules_fragment(API, "z.example.com", priority=10),
        }

        hostnames = [rule.hostname for rule in merge_rules(fragments)]

        assert hostnames == ["z.example.com", "a.example.com", "b.example.com"]


class TestConfigAggregator:
    """Test cases for ConfigAggregator."""

    def test_register_creates_config(self, store):
        """Test that the first fragment creates the per-tunnel record."""
        config = make_aggregator(store).register_fragment("tunnel-1", WEB, rules_fragment(WEB, "web.example.com"))

        assert store.exists(KIND_CONFIG_MAP, NAMESPACE, config_map_name("tunnel-1"))
        assert config.sync_status == SYNC_PENDING
        assert config.content_hash == config.compute_hash()
        assert [rule.hostname for rule in config.rules] == ["web.example.com"]

    def test_registration_order_does_not_change_result(self):
        """Test that every registration order yields the same rules and hash."""
        fragments = [
            (WEB, rules_fragment(WEB, "web.example.com")),
            (API, rules_fragment(API, "api.example.com")),
            (DOCS, rules_fragment(DOCS, "docs.example.com", "a.example.com")),
        ]
        results = set()
        for permutation in itertools.permutations(fragments):
            aggregator = make_aggregator(FakeStore())
            for source, fragment in permutation:
                aggregator.register_fragment("tunnel-1", source, fragment)
            config = aggregator.get("tunnel-1")
            rules = aggregator.aggregate_rules("tunnel-1")
            results.add((config.content_hash, tuple(rule.hostname for rule in rules)))

        assert len(results) == 1

    def test_identical_fragment_issues_no_write(self, store):
        """Test that re-registering unchanged content does not write."""
        aggregator = make_aggregator(store)
        aggregator.register_fragment("tunnel-1", WEB, rules_fragment(WEB, "web.example.com"))
        writes = len(store.writes)

        aggregator.register_fragment("tunnel-1", WEB, rules_fragment(WEB, "web.example.com"))

        assert len(store.writes) == writes

    def test_concurrent_registrations_keep_both(self, store):
        """Test that a registration racing another source loses nothing."""
        aggregator = make_aggregator(store)
        other = make_aggregator(store)
        aggregator.register_fragment("tunnel-1", TUNNEL, ConfigFragment(source=TUNNEL, settings=TunnelSettings()))
        store.update_hooks.append(
            lambda _: other.register_fragment("tunnel-1", API, rules_fragment(API, "api.example.com"))
        )

        aggregator.register_fragment("tunnel-1", WEB, rules_fragment(WEB, "web.example.com"))

        config = aggregator.get("tunnel-1")
        assert set(config.fragments) == {str(TUNNEL), str(WEB), str(API)}
        assert config.content_hash == config.compute_hash()

    def test_create_race_merges_into_winner(self, store):
        """Test that losing the create race merges into the existing record."""
        aggregator = make_aggregator(store)
        other = make_aggregator(store)
        original_create = store.create

        def racing_create(obj):
            store.create = original_create
            other.register_fragment("tunnel-1", API, rules_fragment(API, "api.example.com"))
            return original_create(obj)

        store.create = racing_create

        aggregator.register_fragment("tunnel-1", WEB, rules_fragment(WEB, "web.example.com"))

        assert set(aggregator.get("tunnel-1").fragments) == {str(WEB), str(API)}

    def test_settings_come_from_tunnel_only(self, store):
        """Test that binding fragments cannot set tunnel-wide settings."""
        aggregator = make_aggregator(store)
        aggregator.register_fragment(
            "tunnel-1",
            WEB,
            ConfigFragment(source=WEB, settings=TunnelSettings(fallback_target="http://evil:80")),
        )
        assert aggregator.aggregate_settings("tunnel-1").fallback_target == "http_status:404"

        aggregator.register_fragment(
            "tunnel-1",
            TUNNEL,
            ConfigFragment(source=TUNNEL, settings=TunnelSettings(fallback_target="http://default:80", warp_routing=True)),
        )

        settings = aggregator.aggregate_settings("tunnel-1")
        assert settings.fallback_target == "http://default:80"
        assert settings.warp_routing is True

    def test_remove_fragment_keeps_others(self, store):
        """Test that removing one source leaves the rest."""
        aggregator = make_aggregator(store)
        aggregator.register_fragment("tunnel-1", WEB, rules_fragment(WEB, "web.example.com"))
        aggregator.register_fragment("tunnel-1", API, rules_fragment(API, "api.example.com"))

        config = aggregator.remove_fragment("tunnel-1", WEB)

        assert [rule.hostname for rule in config.rules] == ["api.example.com"]
        assert aggregator.needs_sync("tunnel-1")

    def test_remove_fragment_without_record(self, store):
        """Test that removing from a missing record is a no-op."""
        assert make_aggregator(store).remove_fragment("tunnel-1", WEB) is None

    def test_mark_synced(self, store):
        """Test that a confirmed apply of current content is Synced."""
        aggregator = make_aggregator(store)
        config = aggregator.register_fragment("tunnel-1", WEB, rules_fragment(WEB, "web.example.com"))

        synced = aggregator.mark_synced("tunnel-1", config.content_hash, version=4)

        assert synced.sync_status == SYNC_SYNCED
        assert synced.config_version == 4
        assert not aggregator.needs_sync("tunnel-1")

    def test_mark_synced_with_stale_hash_stays_pending(self, store):
        """Test that a merge landing during an apply is not lost."""
        aggregator = make_aggregator(store)
        applied = aggregator.register_fragment("tunnel-1", WEB, rules_fragment(WEB, "web.example.com")).content_hash
        aggregator.register_fragment("tunnel-1", API, rules_fragment(API, "api.example.com"))

        config = aggregator.mark_synced("tunnel-1", applied, version=1)

        assert config.sync_status == SYNC_PENDING
        assert aggregator.needs_sync("tunnel-1")

    def test_mark_sync_failed_records_sanitized_error(self, store):
        """Test that a failed sync is recorded without secrets."""
        aggregator = make_aggregator(store)
        aggregator.register_fragment("tunnel-1", WEB, rules_fragment(WEB, "web.example.com"))

        config = aggregator.mark_sync_failed("tunnel-1", "request failed: Bearer abc123")

        assert config.sync_status == SYNC_ERROR
        assert "abc123" not in config.sync_error

    def test_bookkeeping_does_not_change_hash(self, store):
        """Test that sync bookkeeping leaves the content hash alone."""
        aggregator = make_aggregator(store)
        config = aggregator.register_fragment("tunnel-1", WEB, rules_fragment(WEB, "web.example.com"))

        aggregator.mark_sync_failed("tunnel-1", "timeout")

        stored = store.get(KIND_CONFIG_MAP, NAMESPACE, config_map_name("tunnel-1"))
        assert stored["data"][CONTENT_HASH_KEY] == config.content_hash

    def test_delete(self, store):
        """Test that the record can be deleted exactly once."""
        aggregator = make_aggregator(store)
        aggregator.register_fragment("tunnel-1", WEB, rules_fragment(WEB, "web.example.com"))

        assert aggregator.delete("tunnel-1") is True
        assert aggregator.delete("tunnel-1") is False
        assert aggregator.get("tunnel-1") is None

    @pytest.mark.parametrize("target", ["tunnel-1", "tunnel-2"])
    def test_targets_are_independent(self, store, target):
        """Test that each target has its own record."""
        aggregator = make_aggregator(store)
        aggregator.register_fragment(target, WEB, rules_fragment(WEB, "web.example.com"))

        other = "tunnel-2" if target == "tunnel-1" else "tunnel-1"
        assert aggregator.get(other) is None

"""Reconciliation engine: conflict retries, finalizers, ownership, lifecycle and aggregation."""

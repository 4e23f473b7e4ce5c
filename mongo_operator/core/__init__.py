"""Reconcile engine: topology, rollout, backups, credentials and status."""

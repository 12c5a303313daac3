"""Persistent state: per-host snapshots, pass history, audit journal and drift checks."""

"""Inventory model: hosts, roles, and per-role declarations.

The inventory is the single source of desired state. It is loaded from YAML
(optionally from a Git repository) and never mutated by a reconciliation pass.
"""

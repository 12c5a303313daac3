"""Reconciliation: turn the inventory's intent for a host into its observed state.

This package provides:
- Change-sets: the ordered mutations a pass plans before applying any
- The reconciler: validate, apply, record for one host
- The fleet runner: independent passes across many hosts
"""

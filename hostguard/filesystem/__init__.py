"""Filesystem Policy Enforcer: the managed directory tree and the named-storage rule."""

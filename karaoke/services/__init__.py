"""Upstream clients, stores and the task reconciler."""

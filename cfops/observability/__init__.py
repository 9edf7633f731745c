"""Observability helpers for the plugin host."""

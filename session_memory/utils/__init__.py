"""Shared utilities: errors, logging, file helpers."""

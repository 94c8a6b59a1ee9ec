"""Utilities for dbpool."""

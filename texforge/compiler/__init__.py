"""Typesetting compiler access, diagnostics and degraded preview."""

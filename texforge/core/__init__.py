"""Generation orchestration, compile-fix cycle, errors and health checks."""

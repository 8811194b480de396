"""Core module: lightweight re-exports only.

The orchestrator is not imported here so that importing logging helpers does
not pull in the runner and protocol models:
    from ccrelay.core.orchestrator import ConnectionOrchestrator
"""

from ccrelay.core.logging import correlation_scope, sanitize_log_value, setup_logging

__all__ = ["correlation_scope", "sanitize_log_value", "setup_logging"]

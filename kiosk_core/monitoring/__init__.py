"""Monitoring and observability package."""
from .logging import redact, setup_logging
from .metrics import metrics

__all__ = ["metrics", "redact", "setup_logging"]

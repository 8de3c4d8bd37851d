"""
Utility functions shared across the package.
"""

from .logging import get_logger, configure_logging, CorrelationContext

__all__ = ["get_logger", "configure_logging", "CorrelationContext"]

"""Exception hierarchy for portfwd.

Provides the base exception every portfwd error derives from, so callers
can catch library failures without catching unrelated ones.
"""

from typing import Any, Dict, Optional


class PortForwardError(Exception):
    """Base exception for all portfwd errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class ConfigurationError(PortForwardError):
    """Configuration validation errors."""

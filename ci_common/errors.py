"""
Exceptions shared across the CI webhook components.
"""


class ConfigurationError(ValueError):
    """Raised when a repository source is configured inconsistently."""


class UnsupportedEventError(ValueError):
    """Raised when a webhook event kind has no registered handler."""

    def __init__(self, event_kind: str):
        super().__init__(f"Unsupported webhook event: {event_kind}")
        self.event_kind = event_kind

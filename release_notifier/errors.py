"""Error taxonomy for the release notifier."""

from typing import Optional


class ReleaseNotifierError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(ReleaseNotifierError):
    """Configuration is missing or unreadable. Fatal, never retried."""


class TransientIOError(ReleaseNotifierError):
    """Network or storage failure. Retryable; leaves no partial state."""


class ValidationError(ReleaseNotifierError):
    """Invalid input rejected at the preference API boundary."""


class NotInitializedError(ReleaseNotifierError):
    """An operation was called before ``initialize()``."""


class DeliveryError(ReleaseNotifierError):
    """A notification could not be delivered to one recipient.

    ``permanent`` is True when the platform reports that the recipient can
    never be messaged (DMs closed, blocked, unknown user). Those recipients
    are opted out automatically.
    """

    def __init__(self, message: str, recipient_id: Optional[str] = None, permanent: bool = False):
        super().__init__(message)
        self.recipient_id = recipient_id
        self.permanent = permanent

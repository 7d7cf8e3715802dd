"""Exception hierarchy for the relay: fetch, persistence, delivery and config failures."""


class RelayError(Exception):
    """Base class for every error raised by the relay."""


class ConfigError(RelayError):
    """Configuration file missing, unreadable or invalid. Fatal at startup."""


class PersistenceError(RelayError):
    """The offset file could not be written."""


class DeliveryError(RelayError):
    """The downstream sink rejected or dropped an event."""


class FetchError(RelayError):
    retryable = True


class TransportError(FetchError):
    """Connection failure or timeout while talking to the log source."""


class AuthenticationError(FetchError):
    """The log source rejected our credentials. Retrying will not help."""

    retryable = False

    def __init__(self, status_code: int, url: str):
        self.status_code = status_code
        self.url = url
        super().__init__(f"Credentials rejected by {url} (HTTP {status_code})")


class UnexpectedResponseError(FetchError):
    """The source answered with a status or header we cannot interpret."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)

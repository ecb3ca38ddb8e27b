"""Errors raised while preparing or forwarding an upstream call."""


class ProxyError(Exception):
    """Base class for proxy failures that map to a fixed HTTP status."""


class MissingCredential(ProxyError):
    """The configured provider has no API key."""


class InvalidPayload(ProxyError):
    """The request body is not a JSON object."""


class UpstreamUnavailable(ProxyError):
    """The upstream could not be reached within the retry budget."""

    def __init__(self, message: str, *, details: str, attempts: int) -> None:
        super().__init__(message)
        self.details = details
        self.attempts = attempts

from typing import Optional


class PowerwallError(Exception):
    """Base class for all errors raised while talking to the gateway."""


class InvalidConfigurationParameter(PowerwallError):
    pass


class TransportError(PowerwallError):
    """
    No HTTP response was received (connection refused, DNS, TLS, hard timeout).

    phase is one of "connect", "timeout" or "request".
    """

    def __init__(self, message: str, url: Optional[str] = None, phase: str = "request"):
        super().__init__(message)
        self.url = url
        self.phase = phase


class AuthError(PowerwallError):
    """Credential exchange failed or returned no session token."""


class HttpStatusError(PowerwallError):

    def __init__(self, status: int, reason: str = "", endpoint: Optional[str] = None):
        super().__init__(f"HTTP {status}: {reason}")
        self.status = status
        self.reason = reason
        self.endpoint = endpoint


class RateLimitError(HttpStatusError):
    """429 received again on the call that was already retried after a 429."""

    def __init__(self, reason: str = "Too Many Requests", endpoint: Optional[str] = None):
        super().__init__(429, reason, endpoint)


class InvalidResponseError(PowerwallError):
    """Successful response whose body is not JSON."""

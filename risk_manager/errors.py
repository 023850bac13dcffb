"""
Error taxonomy for the risk manager.

Route handlers map these to HTTP statuses; only ``TokenExpired`` carries a
stable programmatic code.
"""

from typing import Optional


class RiskManagerError(Exception):
    """Base class for every failure raised by this package."""

    code: Optional[str] = None


class ConfigurationError(RiskManagerError):
    """A required setting is missing or invalid."""


class NotConnected(RiskManagerError):
    """No Tradovate connection exists for the caller."""

    def __init__(self, message: str = "Not connected. Please provide an access token first."):
        super().__init__(message)


class Unauthenticated(RiskManagerError):
    """A request was attempted without an access token."""

    def __init__(self, message: str = "Not authenticated. No access token available."):
        super().__init__(message)


class TokenExpired(RiskManagerError):
    """Upstream refused the token (HTTP 401 / "Access is denied")."""

    code = 'TOKEN_EXPIRED'

    def __init__(self, message: str = "Tradovate token expired. Please reconnect your Tradovate connection."):
        super().__init__(message)


class Unreachable(RiskManagerError):
    """The upstream host could not be reached."""


class UpstreamError(RiskManagerError):
    """Upstream answered with a non-success status or an unreadable body."""

    def __init__(self, status: int, body: str, message: str = None):
        self.status = status
        self.body = body
        super().__init__(message or f"Upstream request failed ({status}): {body}")


class ValidationError(RiskManagerError):
    """Caller-supplied input was rejected before anything was sent upstream."""

    def __init__(self, field: Optional[str], reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"{field}: {reason}" if field else reason)


class UpstreamRejected(RiskManagerError):
    """Upstream accepted the request but refused it with an error text."""

    def __init__(self, text: str):
        self.text = text
        super().__init__(text)


class UpstreamInconsistent(RiskManagerError):
    """Upstream reported success but returned nothing usable."""

    def __init__(self, message: str = "Write accepted but no entity returned"):
        super().__init__(message)

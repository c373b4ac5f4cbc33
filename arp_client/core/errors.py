from __future__ import annotations


class ArpError(Exception):
    """Base class for every failure the client reports to its caller."""

    default_code = "ARP_ERROR"

    def __init__(self, message: str, status_code: int = 0, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code or self.default_code


class NetworkError(ArpError):
    """No response was obtained from the backend at all."""

    default_code = "NETWORK_ERROR"


class MalformedResponseError(ArpError):
    """The backend answered, but the body is not a usable envelope."""

    default_code = "NON_JSON_RESPONSE"


class HttpError(ArpError):
    default_code = "HTTP_ERROR"


class ApplicationError(ArpError):
    """Well-formed envelope that declares ``success: false``."""

    default_code = "API_ERROR"


class LocalExecutionFault(ArpError):
    """Filesystem failure outside the action's own contract (e.g. permissions)."""

    default_code = "LOCAL_EXECUTION_FAULT"


class SandboxViolation(ArpError):
    default_code = "SANDBOX_VIOLATION"

    def __init__(self, message: str, path: str = ""):
        super().__init__(message)
        self.path = path

"""
Exception types shared across the Entra2Action1 connector.

Each layer raises the narrowest type that describes what went wrong:
- ConfigError: the configuration file is unusable (raised before any job runs)
- AuthError: a token could not be obtained from Entra or Action1
- ApiError: an HTTP call returned a non-success response
- PatchValidationError: a planned patch item is structurally malformed
- SecretError: a secret ref is invalid or cannot be resolved
"""

from typing import Any, List, Optional


class ConnectorError(Exception):
    """Base class for all connector errors."""
    pass


class ConfigError(ConnectorError):
    """
    Raised when configuration validation fails.

    All problems found during one load are collected into ``errors`` so the
    operator can fix the whole file in one pass.

    Example:
        >>> try:
        ...     config = load_config("config.json")
        ... except ConfigError as e:
        ...     for problem in e.errors:
        ...         print(problem)
    """

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        if len(self.errors) == 1:
            message = f"Config error: {self.errors[0]}"
        else:
            lines = "\n".join(f"  - {err}" for err in self.errors)
            message = f"Config error: {len(self.errors)} problems found\n{lines}"
        super().__init__(message)


class AuthError(ConnectorError):
    """Raised when authentication against Entra or Action1 fails."""
    pass


class ApiError(ConnectorError):
    """
    Raised when an API request returns a non-success response.

    Attributes:
        status: HTTP status code (None for network-level failures)
        data: Parsed response body, if any
    """

    def __init__(self, message: str, status: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.status = status
        self.data = data


class PatchValidationError(ConnectorError):
    """Raised for a patch item without an endpoint id or a dict body."""
    pass


class SecretError(ConnectorError):
    """Raised when a secret ref is malformed or not found."""
    pass

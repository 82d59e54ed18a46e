"""
chaintoken error types

Every fallible operation raises one of the five kinds below. Each carries
a human readable message; AuthorizationError additionally exposes the
structured reasons for the denial.
"""

from typing import Any, List, Optional


class ChainTokenError(Exception):
    """Base class for all chaintoken failures."""


class DataLogError(ChainTokenError):
    """Malformed Datalog statement, or an evaluation limit overrun."""


class BiscuitBuildError(ChainTokenError):
    """A token could not be built or attenuated."""


class BiscuitValidationError(ChainTokenError):
    """Deserialized data failed format or signature verification."""


class BiscuitSerializationError(ChainTokenError):
    """A valid token could not be encoded."""


class AuthorizationError(ChainTokenError):
    """
    The authorizer denied the request.

    Raised when one or more checks fail, when a deny policy matches, or
    when no policy matches at all.
    """

    def __init__(
        self,
        message: str,
        failed_checks: Optional[List[Any]] = None,
        policy: Optional[Any] = None
    ):
        super().__init__(message)
        self.failed_checks = list(failed_checks or [])
        self.policy = policy


__all__ = [
    "ChainTokenError",
    "DataLogError",
    "BiscuitBuildError",
    "BiscuitValidationError",
    "BiscuitSerializationError",
    "AuthorizationError",
]

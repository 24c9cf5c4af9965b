"""Stable error taxonomy for the flags gateway.

This module defines machine-readable error codes and the exception types used
across credential resolution, evaluation, and the HTTP layer.

Taxonomy:
- RequestShapeError: missing/malformed scope or body. No store access happens.
- NotFoundError: the store was reached and no matching row exists.
- UpstreamError: store or identity-provider failure. The client only ever sees
  a generic message; detail stays in server logs.
- TokenError: any capability token failure. Always "invalid token", so callers
  cannot tell an expired token from a forged one.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Request shape
FLAGS_E_BAD_REQUEST = "FLAGS_E_BAD_REQUEST"
FLAGS_E_SCOPE_REQUIRED = "FLAGS_E_SCOPE_REQUIRED"

# Lookup
FLAGS_E_NOT_FOUND = "FLAGS_E_NOT_FOUND"
FLAGS_E_NO_DEFAULT_ENVIRONMENT = "FLAGS_E_NO_DEFAULT_ENVIRONMENT"

# Upstream
FLAGS_E_STORE = "FLAGS_E_STORE"
FLAGS_E_IDENTITY_PROVIDER = "FLAGS_E_IDENTITY_PROVIDER"
FLAGS_E_INTERNAL = "FLAGS_E_INTERNAL"

# Auth
FLAGS_E_TOKEN_INVALID = "FLAGS_E_TOKEN_INVALID"
FLAGS_E_AUTH_REQUIRED = "FLAGS_E_AUTH_REQUIRED"

# Config
FLAGS_E_CONFIG = "FLAGS_E_CONFIG"

GENERIC_UPSTREAM_MESSAGE = "upstream service unavailable"
GENERIC_TOKEN_MESSAGE = "invalid token"


@dataclass
class FlagsError(Exception):
    """Base gateway exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class RequestShapeError(FlagsError):
    def __init__(self, message: str, code: str = FLAGS_E_BAD_REQUEST, **details: Any):
        super().__init__(code=code, message=message, http_status=400, details=details)


class NotFoundError(FlagsError):
    def __init__(self, message: str = "not found", code: str = FLAGS_E_NOT_FOUND, **details: Any):
        super().__init__(code=code, message=message, http_status=404, details=details)


class NoDefaultEnvironmentError(NotFoundError):
    """The agent has no environments, so no default can be picked."""

    def __init__(self, project_id: str, agent_id: str):
        super().__init__(
            "no default environment",
            code=FLAGS_E_NO_DEFAULT_ENVIRONMENT,
            project_id=project_id,
            agent_id=agent_id,
        )


class UpstreamError(FlagsError):
    """Store or identity-provider failure.

    `cause` carries the server-side detail for logging; it is never part of
    `as_dict()`.
    """

    def __init__(self, code: str = FLAGS_E_STORE, cause: str = ""):
        super().__init__(
            code=code,
            message=GENERIC_UPSTREAM_MESSAGE,
            retryable=True,
            http_status=500,
        )
        self.cause = cause


class TokenError(FlagsError):
    def __init__(self) -> None:
        super().__init__(code=FLAGS_E_TOKEN_INVALID, message=GENERIC_TOKEN_MESSAGE, http_status=401)


def flags_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> FlagsError:
    return FlagsError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)

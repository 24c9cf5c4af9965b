"""Wire shapes for evaluation results.

Two encodings are derived from the same EvaluationResult:

Legacy (GET /flags):
    {"intervalAllowed": 60, "secretMenu": {...}, "flags": [{"enabled": true, "details": {"name": ..., "id": ...}}]}

OFREP-style (POST /ofrep/v1/evaluate/flags[/{key}]):
    {"key": ..., "reason": "STATIC", "variant": "enabled", "value": true, "metadata": {"flagId": ...}}
    {"key": ..., "errorCode": "FLAG_NOT_FOUND", "errorDetails": ..., "reason": "ERROR"}
    {"flags": [...]}

Both encodings take the boolean straight from Flag.enabled, so the same store
state always yields the same value for the same flag name.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from .models import EvaluationResult, Flag, LookupStatus, Reason, SecretMenu


class ErrorCode(str, Enum):
    PARSE_ERROR = "PARSE_ERROR"
    TARGETING_KEY_MISSING = "TARGETING_KEY_MISSING"
    INVALID_CONTEXT = "INVALID_CONTEXT"
    FLAG_NOT_FOUND = "FLAG_NOT_FOUND"
    TYPE_MISMATCH = "TYPE_MISMATCH"
    GENERAL = "GENERAL"


# ---------------------------
# Legacy shape
# ---------------------------

class LegacyFlagDetails(BaseModel):
    name: str
    id: str
    lastChanged: Optional[str] = None


class LegacyFlag(BaseModel):
    enabled: bool
    details: LegacyFlagDetails


class LegacySecretMenuStyle(BaseModel):
    name: str
    value: str


class LegacySecretMenu(BaseModel):
    sequence: List[str] = Field(default_factory=list)
    styles: List[LegacySecretMenuStyle] = Field(default_factory=list)


class LegacyResponse(BaseModel):
    intervalAllowed: int
    secretMenu: Optional[LegacySecretMenu] = None
    flags: List[LegacyFlag] = Field(default_factory=list)


def _legacy_flag(flag: Flag) -> LegacyFlag:
    return LegacyFlag(
        enabled=flag.enabled,
        details=LegacyFlagDetails(name=flag.name, id=flag.id, lastChanged=flag.last_changed or None),
    )


def legacy_response(
    result: Optional[EvaluationResult],
    interval_allowed: int,
    secret_menu: Optional[SecretMenu] = None,
) -> Dict[str, Any]:
    menu = None
    if secret_menu is not None:
        menu = LegacySecretMenu(
            sequence=list(secret_menu.sequence),
            styles=[LegacySecretMenuStyle(name=s.name, value=s.value) for s in secret_menu.styles],
        )
    flags = [_legacy_flag(f) for f in result.flags] if result is not None else []
    return LegacyResponse(intervalAllowed=interval_allowed, secretMenu=menu, flags=flags).model_dump(exclude_none=True)


def degraded_response(interval_allowed: int) -> Dict[str, Any]:
    """The "slow down, no flags" payload written when authentication fails."""
    return LegacyResponse(intervalAllowed=interval_allowed).model_dump(exclude_none=True)


# ---------------------------
# OFREP shape
# ---------------------------

class EvaluationContext(BaseModel):
    """Accepted for protocol compatibility; no rule is evaluated against it."""

    targetingKey: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class EvaluationRequest(BaseModel):
    context: EvaluationContext = Field(default_factory=EvaluationContext)


class SuccessEvaluation(BaseModel):
    key: str
    reason: Reason
    variant: Optional[str] = None
    value: Any
    metadata: Optional[Dict[str, Any]] = None


class ErrorEvaluation(BaseModel):
    key: str
    errorCode: ErrorCode
    errorDetails: Optional[str] = None
    reason: Reason = Reason.ERROR
    metadata: Optional[Dict[str, Any]] = None


class BulkEvaluation(BaseModel):
    flags: List[Dict[str, Any]] = Field(default_factory=list)
    errorCode: Optional[ErrorCode] = None
    errorDetails: Optional[str] = None


def ofrep_success(key: str, flag: Flag) -> Dict[str, Any]:
    # Flags are unconditional boolean toggles, so every resolved value is STATIC.
    return SuccessEvaluation(
        key=key,
        reason=Reason.STATIC,
        variant="enabled" if flag.enabled else "disabled",
        value=flag.enabled,
        metadata={"flagId": flag.id},
    ).model_dump(mode="json", exclude_none=True)


def ofrep_error(key: str, code: ErrorCode, details: str = "") -> Dict[str, Any]:
    return ErrorEvaluation(key=key, errorCode=code, errorDetails=details or None).model_dump(
        mode="json", exclude_none=True
    )


def ofrep_single(key: str, result: EvaluationResult) -> Tuple[int, Dict[str, Any]]:
    """(status_code, body) for a single-flag evaluation result."""
    if result.status is LookupStatus.FOUND and result.flag is not None:
        return 200, ofrep_success(key, result.flag)
    # A canceled lookup has no result to report; it reads as absent.
    return 404, ofrep_error(key, ErrorCode.FLAG_NOT_FOUND, "Flag not found")


def ofrep_bulk(result: Optional[EvaluationResult]) -> Dict[str, Any]:
    flags = [ofrep_success(f.name, f) for f in result.flags] if result is not None else []
    return BulkEvaluation(flags=flags).model_dump(mode="json", exclude_none=True)


def ofrep_bulk_error(code: ErrorCode, details: str = "") -> Dict[str, Any]:
    """Bulk failures keep the `flags` key (always empty) next to the error."""
    return BulkEvaluation(errorCode=code, errorDetails=details or None).model_dump(mode="json", exclude_none=True)

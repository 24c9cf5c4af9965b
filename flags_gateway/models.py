"""Core value types shared by the evaluation path.

These are plain dataclasses. Wire shapes live in `responses.py`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class Scope:
    """The (project, agent, environment) triple an evaluation applies to.

    `environment_id` may be empty at the protocol boundary; the evaluator
    fills it in from the agent's default environment before querying flags.
    """

    project_id: str = ""
    agent_id: str = ""
    environment_id: str = ""

    def is_complete(self) -> bool:
        return bool(self.project_id and self.agent_id)

    def with_environment(self, environment_id: str) -> "Scope":
        return Scope(self.project_id, self.agent_id, environment_id)

    def as_dict(self) -> Dict[str, str]:
        return {
            "project_id": self.project_id,
            "agent_id": self.agent_id,
            "environment_id": self.environment_id,
        }


@dataclass(frozen=True)
class Flag:
    id: str
    name: str
    enabled: bool
    last_changed: str = ""


@dataclass(frozen=True)
class SecretMenuStyle:
    name: str
    value: str


@dataclass(frozen=True)
class SecretMenu:
    """Per-environment easter egg attached to legacy agent responses."""

    sequence: List[str] = field(default_factory=list)
    styles: List[SecretMenuStyle] = field(default_factory=list)


class Reason(str, Enum):
    STATIC = "STATIC"
    TARGETING_MATCH = "TARGETING_MATCH"
    DEFAULT = "DEFAULT"
    DISABLED = "DISABLED"
    ERROR = "ERROR"
    UNKNOWN = "UNKNOWN"


class LookupStatus(str, Enum):
    """Store outcome. Failures are raised as UpstreamError, not returned."""

    FOUND = "found"
    NOT_FOUND = "not_found"
    CANCELED = "canceled"


@dataclass
class EvaluationResult:
    """Transient per-request outcome of a single or bulk evaluation."""

    scope: Scope
    status: LookupStatus
    flags: List[Flag] = field(default_factory=list)
    reason: Reason = Reason.STATIC
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def flag(self) -> Optional[Flag]:
        return self.flags[0] if self.flags else None

    @property
    def found(self) -> bool:
        return self.status is LookupStatus.FOUND

"""Default environment resolution.

When a request names no environment, flags are read from the agent's default
environment: the earliest-created environment belonging to that agent in that
project, ties broken by insertion order. An agent with no environments has no
default, which is an error rather than an empty string.
"""

from __future__ import annotations

from typing import Optional

from .errors import NoDefaultEnvironmentError
from .models import Scope
from .store import FlagStore, QueryContext


class EnvironmentResolver:
    def __init__(self, store: FlagStore):
        self.store = store

    def default_environment(self, project_id: str, agent_id: str, ctx: Optional[QueryContext] = None) -> str:
        """Return the default env_id. Raises NoDefaultEnvironmentError or QueryCanceled."""
        env_id = self.store.default_environment(project_id, agent_id, ctx)
        if not env_id:
            raise NoDefaultEnvironmentError(project_id, agent_id)
        return env_id

    def complete(self, scope: Scope, ctx: Optional[QueryContext] = None) -> Scope:
        """Fill in the environment of `scope` if it is missing."""
        if scope.environment_id:
            return scope
        return scope.with_environment(self.default_environment(scope.project_id, scope.agent_id, ctx))

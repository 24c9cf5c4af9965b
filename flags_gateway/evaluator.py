"""Flag evaluation against the store.

Every call reads through to the database. There is no cache, so disabling a
project or agent takes effect on the very next evaluation.

Outcomes are kept distinct here:
- FOUND: the flag (or at least the query) resolved
- NOT_FOUND: the store answered and no row matched (including disabled
  projects/agents)
- CANCELED: the request's QueryContext fired while the query ran
- store failures raise UpstreamError

Collapsing CANCELED into "not found" is left to the HTTP layer.

Each evaluate/evaluate_all call emits exactly one outcome event to the stats
sink. NOT_FOUND and CANCELED count as success (the query itself did not
fail). Upstream failures and a missing default environment count as errors.
An incomplete scope is rejected before the call starts: it raises
RequestShapeError without touching the store and emits no event, since no
evaluation took place.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from .environments import EnvironmentResolver
from .errors import FLAGS_E_SCOPE_REQUIRED, RequestShapeError
from .models import EvaluationResult, Flag, LookupStatus, Reason, Scope
from .stats import NullStatsSink, StatsSink, emit_outcome
from .store import FlagStore, QueryCanceled, QueryContext

logger = logging.getLogger("flags_gateway.evaluator")


class FlagEvaluator:
    def __init__(self, store: FlagStore, stats: Optional[StatsSink] = None):
        self.store = store
        self.environments = EnvironmentResolver(store)
        self.stats = stats if stats is not None else NullStatsSink()

    def _require_scope(self, scope: Scope) -> None:
        if not scope.is_complete():
            raise RequestShapeError("project_id and agent_id are required", code=FLAGS_E_SCOPE_REQUIRED)

    def evaluate(self, scope: Scope, flag_name: str, ctx: Optional[QueryContext] = None) -> EvaluationResult:
        """Evaluate one flag by case-insensitive name.

        Raises RequestShapeError (before any store access) when the scope is
        incomplete, NoDefaultEnvironmentError, or UpstreamError.
        """
        self._require_scope(scope)
        resolved = scope
        success = False
        try:
            try:
                resolved = self.environments.complete(scope, ctx)
                flag = self.store.find_flag(resolved, flag_name, ctx)
            except QueryCanceled:
                logger.debug("flag lookup canceled for %s", flag_name)
                success = True
                return EvaluationResult(scope=resolved, status=LookupStatus.CANCELED, reason=Reason.DEFAULT)
            success = True
            if flag is None:
                return EvaluationResult(scope=resolved, status=LookupStatus.NOT_FOUND, reason=Reason.ERROR)
            return EvaluationResult(
                scope=resolved,
                status=LookupStatus.FOUND,
                flags=[flag],
                reason=Reason.STATIC,
                metadata={"flagId": flag.id},
            )
        finally:
            emit_outcome(self.stats, resolved, success)

    def evaluate_all(self, scope: Scope, ctx: Optional[QueryContext] = None) -> EvaluationResult:
        """Evaluate every flag in scope, in the store's retrieval order.

        A scope with no visible flags (including a disabled project or agent)
        is NOT_FOUND with an empty flag list.
        """
        self._require_scope(scope)
        resolved = scope
        success = False
        try:
            try:
                resolved = self.environments.complete(scope, ctx)
                flags: List[Flag] = self.store.list_flags(resolved, ctx)
            except QueryCanceled:
                logger.debug("bulk flag lookup canceled")
                success = True
                return EvaluationResult(scope=resolved, status=LookupStatus.CANCELED, reason=Reason.DEFAULT)
            success = True
            status = LookupStatus.FOUND if flags else LookupStatus.NOT_FOUND
            return EvaluationResult(scope=resolved, status=status, flags=flags, reason=Reason.STATIC)
        finally:
            emit_outcome(self.stats, resolved, success)


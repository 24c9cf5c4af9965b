from flags_gateway.auth_gate import AuthGate, GateState, gated_path
from flags_gateway.credentials import CredentialResolver
from flags_gateway.models import Scope

USER = {"x-user-subject": "user-1", "x-user-access-token": "tok"}
AGENT = {"x-project-id": "test-project-1", "x-agent-id": "test-agent-1"}


def _gate(tokens, store, identity, **kw):
    development = kw.pop("development", False)
    resolver = CredentialResolver.default(tokens, development=development, **kw)
    return AuthGate(resolver, store, identity, development=development)


def test_known_user_is_admitted(tokens, store, identity):
    d = _gate(tokens, store, identity).decide(USER)
    assert d.state is GateState.ADMITTED
    assert d.user.subject == "user-1"
    assert d.trail == [GateState.UNAUTHENTICATED, GateState.USER_CHECKED, GateState.ADMITTED]


def test_unknown_user_falls_through_to_agent(tokens, store, identity, example):
    headers = {"x-user-subject": "stranger", "x-user-access-token": "tok", **AGENT}
    d = _gate(tokens, store, identity).decide(headers)
    assert d.state is GateState.ADMITTED
    assert d.user is None
    assert d.scope == Scope("test-project-1", "test-agent-1", "")
    assert d.trail == [GateState.UNAUTHENTICATED, GateState.USER_CHECKED, GateState.AGENT_CHECKED, GateState.ADMITTED]


def test_identity_provider_outage_does_not_reject(tokens, store, failing_identity, example):
    d = _gate(tokens, store, failing_identity).decide({**USER, **AGENT})
    assert d.state is GateState.ADMITTED
    assert d.user is None
    assert failing_identity.lookups == ["user-1"]


def test_identity_provider_outage_without_agent_degrades(tokens, store, failing_identity):
    d = _gate(tokens, store, failing_identity).decide(USER)
    assert d.state is GateState.DEGRADED


def test_agent_and_environment_checked_jointly(tokens, store, identity, example):
    gate = _gate(tokens, store, identity)
    assert gate.decide({**AGENT, "x-environment-id": "test-env-2"}).state is GateState.ADMITTED
    assert gate.decide({**AGENT, "x-environment-id": "someone-elses-env"}).state is GateState.DEGRADED


def test_unknown_agent_degrades(tokens, store, identity, example):
    d = _gate(tokens, store, identity).decide({"x-project-id": "test-project-1", "x-agent-id": "ghost"})
    assert d.state is GateState.DEGRADED
    assert d.trail[-2:] == [GateState.AGENT_CHECKED, GateState.DEGRADED]


def test_partial_agent_headers_degrade(tokens, store, identity, example):
    assert _gate(tokens, store, identity).decide({"x-agent-id": "test-agent-1"}).state is GateState.DEGRADED


def test_valid_token_is_admitted(tokens, store, identity, example):
    token = tokens.issue(Scope("test-project-1", "test-agent-1", "test-env-1")).token
    d = _gate(tokens, store, identity).decide({"X-API-Key": token})
    assert d.state is GateState.ADMITTED
    assert d.scope.environment_id == "test-env-1"


def test_invalid_token_alone_degrades(tokens, store, identity, example):
    assert _gate(tokens, store, identity).decide({"X-API-Key": "garbage"}).state is GateState.DEGRADED


def test_invalid_token_with_valid_headers(tokens, store, identity, example):
    headers = {"X-API-Key": "garbage", **AGENT}
    assert _gate(tokens, store, identity).decide(headers).state is GateState.ADMITTED
    assert _gate(tokens, store, identity, strict=True).decide(headers).state is GateState.DEGRADED


def test_no_credentials_reach_the_handler(tokens, store, identity):
    d = _gate(tokens, store, identity).decide({})
    assert d.state is GateState.ADMITTED
    assert d.trail == [GateState.UNAUTHENTICATED, GateState.ADMITTED]
    assert identity.lookups == []


def test_store_failure_counts_as_failed_check(tokens, tmp_path, identity):
    import sqlite3

    from flags_gateway.store import FlagStore

    path = str(tmp_path / "empty.db")
    sqlite3.connect(path).close()
    gate = _gate(tokens, FlagStore(path, init_schema=False), identity)
    assert gate.decide(AGENT).state is GateState.DEGRADED


def test_development_mode_admits_everything(tokens, store, failing_identity):
    gate = _gate(tokens, store, failing_identity, development=True, dev_user_subject="dev-user")
    d = gate.decide({"X-API-Key": "garbage", "x-agent-id": "ghost"})
    assert d.state is GateState.ADMITTED
    assert d.user.subject == "dev-user"
    assert failing_identity.lookups == []


def test_gated_paths():
    assert gated_path("/flags")
    assert gated_path("/ofrep/v1/evaluate/flags")
    assert gated_path("/ofrep/v1/evaluate/flags/x")
    assert not gated_path("/health")
    assert not gated_path("/metrics")
    assert not gated_path("/api-key/generate")
    assert not gated_path("/flags-extra")

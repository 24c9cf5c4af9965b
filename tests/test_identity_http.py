import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from flags_gateway.auth_gate import AuthGate, GateState
from flags_gateway.config import IdentityProviderConfig
from flags_gateway.credentials import CredentialResolver
from flags_gateway.errors import UpstreamError
from flags_gateway.identity import (
    KeycloakIdentityProvider,
    UnconfiguredIdentityProvider,
    build_identity_provider,
)


class _KeycloakHandler(BaseHTTPRequestHandler):
    # Class-level knobs for the stub.
    users = {"user-1": {"id": "user-1", "username": "alice"}}
    token_status = 200
    user_status = None
    truncate_token = False
    requests = []

    def _send_json(self, status, payload):
        body = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_POST(self):  # noqa: N802
        length = int(self.headers.get("Content-Length", "0") or "0")
        body = self.rfile.read(length).decode("utf-8") if length else ""
        _KeycloakHandler.requests.append(("POST", self.path, body))
        if _KeycloakHandler.truncate_token:
            # Promise more bytes than are sent, then hang up.
            self.send_response(200)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", "500")
            self.end_headers()
            self.wfile.write(b'{"access_token": "ad')
            self.close_connection = True
            return
        if _KeycloakHandler.token_status != 200:
            self._send_json(_KeycloakHandler.token_status, {"error": "unauthorized_client"})
            return
        self._send_json(200, {"access_token": "admin-token", "expires_in": 60})

    def do_GET(self):  # noqa: N802
        _KeycloakHandler.requests.append(("GET", self.path, self.headers.get("Authorization")))
        if _KeycloakHandler.user_status is not None:
            self._send_json(_KeycloakHandler.user_status, {"error": "boom"})
            return
        subject = self.path.rsplit("/", 1)[-1]
        user = _KeycloakHandler.users.get(subject)
        if user is None:
            self._send_json(404, {"error": "User not found"})
            return
        self._send_json(200, user)

    def log_message(self, format, *args):  # noqa: A003
        # Silence noisy test logs.
        return


@pytest.fixture
def keycloak():
    _KeycloakHandler.token_status = 200
    _KeycloakHandler.user_status = None
    _KeycloakHandler.truncate_token = False
    _KeycloakHandler.requests = []

    httpd = HTTPServer(("127.0.0.1", 0), _KeycloakHandler)
    host, port = httpd.server_address
    t = threading.Thread(target=httpd.serve_forever, daemon=True)
    t.start()
    try:
        yield KeycloakIdentityProvider(
            url=f"http://{host}:{port}",
            realm="flags",
            client_id="gateway",
            client_secret="secret",
            timeout_seconds=2,
        )
    finally:
        httpd.shutdown()
        httpd.server_close()
        t.join(timeout=2)


def test_known_user_is_returned(keycloak):
    user = keycloak.get_user_by_external_id("user-1")
    assert user == {"id": "user-1", "username": "alice"}

    method, path, body = _KeycloakHandler.requests[0]
    assert (method, path) == ("POST", "/realms/flags/protocol/openid-connect/token")
    assert "grant_type=client_credentials" in body
    assert _KeycloakHandler.requests[1] == ("GET", "/admin/realms/flags/users/user-1", "Bearer admin-token")


def test_unknown_user_is_none(keycloak):
    assert keycloak.get_user_by_external_id("nobody") is None


def test_empty_subject_skips_the_network(keycloak):
    assert keycloak.get_user_by_external_id("") is None
    assert _KeycloakHandler.requests == []


def test_subject_is_path_escaped(keycloak):
    keycloak.get_user_by_external_id("../../evil")
    assert _KeycloakHandler.requests[1][1] == "/admin/realms/flags/users/..%2F..%2Fevil"


def test_rejected_client_credentials(keycloak):
    _KeycloakHandler.token_status = 401
    with pytest.raises(UpstreamError) as exc:
        keycloak.get_user_by_external_id("user-1")
    assert "401" in exc.value.cause


def test_server_error_on_lookup(keycloak):
    _KeycloakHandler.user_status = 503
    with pytest.raises(UpstreamError) as exc:
        keycloak.get_user_by_external_id("user-1")
    assert exc.value.http_status == 500
    assert exc.value.as_dict()["message"] == "upstream service unavailable"


def test_truncated_response_is_upstream_error(keycloak):
    _KeycloakHandler.truncate_token = True
    with pytest.raises(UpstreamError) as exc:
        keycloak.get_user_by_external_id("user-1")
    assert "IncompleteRead" in exc.value.cause


def test_truncated_response_falls_through_to_agent_check(keycloak, tokens, store, example):
    _KeycloakHandler.truncate_token = True
    gate = AuthGate(CredentialResolver.default(tokens), store, keycloak)
    headers = {
        "x-user-subject": "user-1",
        "x-user-access-token": "tok",
        "x-project-id": "test-project-1",
        "x-agent-id": "test-agent-1",
    }

    d = gate.decide(headers)
    assert d.state is GateState.ADMITTED
    assert d.user is None
    assert d.trail[-2:] == [GateState.AGENT_CHECKED, GateState.ADMITTED]


def test_unreachable_provider_is_upstream_error():
    # Port 9 (discard) on localhost is almost never listening.
    provider = KeycloakIdentityProvider(url="http://127.0.0.1:9", realm="flags", timeout_seconds=0.5)
    with pytest.raises(UpstreamError):
        provider.get_user_by_external_id("user-1")


def test_unconfigured_provider():
    provider = build_identity_provider(IdentityProviderConfig())
    assert isinstance(provider, UnconfiguredIdentityProvider)
    with pytest.raises(UpstreamError):
        provider.get_user_by_external_id("user-1")


def test_configured_provider():
    provider = build_identity_provider(IdentityProviderConfig(url="http://kc.local/", realm="flags"))
    assert isinstance(provider, KeycloakIdentityProvider)
    assert provider.url == "http://kc.local"

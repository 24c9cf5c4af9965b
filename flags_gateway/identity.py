"""flags_gateway.identity

Identity provider client used to validate dashboard users.

Only one operation is needed: look a user up by the external subject sent in
`x-user-subject`. The keycloak adapter talks to the admin REST API:

    POST {url}/realms/{realm}/protocol/openid-connect/token   (client credentials)
    GET  {url}/admin/realms/{realm}/users/{subject}

The provider is treated as highly fallible. DNS, network, HTTP and parse
failures raise UpstreamError (detail on `.cause`); they never take the
process down. An unknown user is not an error: it returns None.
"""

from __future__ import annotations

import http.client
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from .config import IdentityProviderConfig
from .errors import FLAGS_E_IDENTITY_PROVIDER, UpstreamError

logger = logging.getLogger("flags_gateway.identity")


class IdentityProvider(Protocol):
    def get_user_by_external_id(self, subject: str) -> Optional[Dict[str, Any]]:
        ...


@dataclass
class UnconfiguredIdentityProvider:
    """Used when no provider is configured: every lookup fails upstream."""

    def get_user_by_external_id(self, subject: str) -> Optional[Dict[str, Any]]:
        raise UpstreamError(FLAGS_E_IDENTITY_PROVIDER, cause="identity provider not configured")


@dataclass
class KeycloakIdentityProvider:
    url: str
    realm: str
    client_id: str = ""
    client_secret: str = ""
    timeout_seconds: float = 5.0

    @classmethod
    def from_config(cls, cfg: IdentityProviderConfig) -> "KeycloakIdentityProvider":
        return cls(
            url=cfg.url.rstrip("/"),
            realm=cfg.realm,
            client_id=cfg.client_id,
            client_secret=cfg.client_secret,
            timeout_seconds=cfg.timeout_seconds,
        )

    def _request_json(self, req: urllib.request.Request) -> Any:
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                body = resp.read()
            return json.loads(body.decode("utf-8")) if body else None
        except urllib.error.HTTPError:
            raise
        except (urllib.error.URLError, http.client.HTTPException, OSError, ValueError) as e:
            raise UpstreamError(FLAGS_E_IDENTITY_PROVIDER, cause=f"{type(e).__name__}: {e}") from e

    def _admin_token(self) -> str:
        body = urllib.parse.urlencode(
            {
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            }
        ).encode("utf-8")
        req = urllib.request.Request(
            f"{self.url}/realms/{urllib.parse.quote(self.realm, safe='')}/protocol/openid-connect/token",
            data=body,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            method="POST",
        )
        try:
            decoded = self._request_json(req)
        except urllib.error.HTTPError as e:
            raise UpstreamError(FLAGS_E_IDENTITY_PROVIDER, cause=f"token endpoint HTTP {e.code}") from e
        token = decoded.get("access_token") if isinstance(decoded, dict) else None
        if not isinstance(token, str) or not token:
            raise UpstreamError(FLAGS_E_IDENTITY_PROVIDER, cause="token endpoint returned no access_token")
        return token

    def get_user_by_external_id(self, subject: str) -> Optional[Dict[str, Any]]:
        if not subject:
            return None
        token = self._admin_token()
        req = urllib.request.Request(
            f"{self.url}/admin/realms/{urllib.parse.quote(self.realm, safe='')}"
            f"/users/{urllib.parse.quote(subject, safe='')}",
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            method="GET",
        )
        try:
            decoded = self._request_json(req)
        except urllib.error.HTTPError as e:
            if e.code == 404:
                return None
            raise UpstreamError(FLAGS_E_IDENTITY_PROVIDER, cause=f"user lookup HTTP {e.code}") from e
        if not isinstance(decoded, dict):
            raise UpstreamError(FLAGS_E_IDENTITY_PROVIDER, cause="user lookup returned a non-object")
        return decoded


def build_identity_provider(cfg: IdentityProviderConfig) -> IdentityProvider:
    if not cfg.configured():
        logger.info("No identity provider configured (FLAGS_IDP_URL/FLAGS_IDP_REALM); user validation will fail")
        return UnconfiguredIdentityProvider()
    return KeycloakIdentityProvider.from_config(cfg)

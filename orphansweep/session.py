from __future__ import annotations

import base64
import json
import logging
import os
import threading
import time
from typing import Any, Callable, Optional

import msal
import requests
from azure.core.credentials import AccessToken
from azure.identity import ClientSecretCredential, DeviceCodeCredential
from azure.mgmt.authorization import AuthorizationManagementClient
from azure.mgmt.resource import ResourceManagementClient

from orphansweep.errors import ArmRequestError, AuthenticationError

logger = logging.getLogger("orphansweep.session")

AZURE_PUBLIC_CLIENT_ID = "04b07795-8ddb-461a-bbee-02f9e1bf7b46"  # Azure CLI public app id
ARM_BASE = "https://management.azure.com"
GRAPH_BASE = "https://graph.microsoft.com"
ARM_SCOPE = f"{ARM_BASE}/.default"
GRAPH_SCOPE = f"{GRAPH_BASE}/.default"
AUTH_METHODS = ("auto", "client-secret", "device-code", "az-cache")


def _b64_json(segment: str) -> dict[str, Any]:
    segment += "=" * (-len(segment) % 4)
    data = base64.urlsafe_b64decode(segment.encode("utf-8"))
    obj = json.loads(data.decode("utf-8", errors="ignore"))
    return obj if isinstance(obj, dict) else {}


def jwt_claims(token: str) -> dict[str, Any]:
    """
    Decode JWT claims WITHOUT verifying the signature.
    Only used to read `tid`/`oid`/`exp` from our own access tokens.
    """
    parts = (token or "").split(".")
    if len(parts) < 2:
        return {}
    try:
        return _b64_json(parts[1])
    except (ValueError, UnicodeDecodeError):
        return {}


class AzureMsalTokenCacheCredential:
    """
    Reuse an `az login` session from ~/.azure/msal_token_cache.json without shelling out to `az`.
    """

    def __init__(
        self,
        *,
        cache_path: Optional[str] = None,
        client_id: str = AZURE_PUBLIC_CLIENT_ID,
        authority: str = "https://login.microsoftonline.com/organizations",
    ) -> None:
        self._cache_path = cache_path or os.path.expanduser("~/.azure/msal_token_cache.json")
        if not os.path.exists(self._cache_path):
            raise AuthenticationError(f"Azure CLI token cache not found at {self._cache_path}")
        cache = msal.SerializableTokenCache()
        with open(self._cache_path, "r", encoding="utf-8") as f:
            cache.deserialize(f.read())
        self._app = msal.PublicClientApplication(client_id=client_id, authority=authority, token_cache=cache)

    def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        accounts = self._app.get_accounts()
        if not accounts:
            raise AuthenticationError("No accounts in the Azure CLI token cache. Run `az login` or pick another auth method.")
        result = self._app.acquire_token_silent(list(scopes), account=accounts[0])
        if not result or "access_token" not in result:
            raise AuthenticationError(f"Silent token acquisition from the Azure CLI cache failed: {result}")
        return AccessToken(result["access_token"], int(result.get("expires_on") or 0))


class StaticTokenCredential:
    def __init__(self, *, arm_token: str, graph_token: Optional[str] = None) -> None:
        self._arm_token = (arm_token or "").strip()
        self._graph_token = (graph_token or "").strip() or None

    def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        if any("graph.microsoft.com" in s for s in scopes):
            if not self._graph_token:
                raise AuthenticationError("A Graph token is required to verify principals. Provide --graph-token.")
            token = self._graph_token
        else:
            token = self._arm_token
        exp = jwt_claims(token).get("exp")
        return AccessToken(token, int(exp) if exp else int(time.time()) + 300)


class SerializedCredential:
    """
    Wraps any azure-core style credential so that only one thread at a time
    acquires or refreshes a token. Tokens are cached per scope until five
    minutes before expiry. Any acquisition failure surfaces as
    AuthenticationError, including inside SDK client pipelines.
    """

    REFRESH_MARGIN_S = 300

    def __init__(self, inner: Any) -> None:
        self._inner = inner
        self._lock = threading.Lock()
        self._tokens: dict[tuple[str, ...], AccessToken] = {}

    def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        key = tuple(scopes)
        with self._lock:
            tok = self._tokens.get(key)
            if tok is not None and tok.expires_on - self.REFRESH_MARGIN_S > time.time():
                return tok
            try:
                tok = self._inner.get_token(*scopes, **kwargs)
            except AuthenticationError:
                raise
            except Exception as e:
                raise AuthenticationError(f"Token acquisition for {', '.join(scopes)} failed: {e}") from e
            self._tokens[key] = tok
            return tok

    def close(self) -> None:
        close = getattr(self._inner, "close", None)
        if callable(close):
            close()


def build_credential(
    *,
    auth_method: str = "auto",
    tenant_id: Optional[str] = None,
    client_id: Optional[str] = None,
    client_secret: Optional[str] = None,
    arm_token: Optional[str] = None,
    graph_token: Optional[str] = None,
    device_client_id: Optional[str] = None,
    use_az_token_cache: bool = True,
    prompt: Callable[[str], None] = print,
) -> Any:
    # No AzureCliCredential: we never shell out to the `az` CLI.
    auth_method = (auth_method or "auto").strip().lower()
    if auth_method not in AUTH_METHODS:
        raise ValueError(f"Invalid auth method '{auth_method}'. Use one of: {', '.join(AUTH_METHODS)}")

    if arm_token:
        return StaticTokenCredential(arm_token=arm_token, graph_token=graph_token)

    if auth_method in ("auto", "client-secret") and tenant_id and client_id and client_secret:
        return ClientSecretCredential(tenant_id=tenant_id, client_id=client_id, client_secret=client_secret)
    if auth_method == "client-secret":
        raise AuthenticationError("client-secret auth selected but tenant id, client id or client secret is missing.")

    if auth_method in ("auto", "az-cache") and use_az_token_cache:
        try:
            return AzureMsalTokenCacheCredential()
        except AuthenticationError:
            if auth_method == "az-cache":
                raise
            logger.debug("Azure CLI token cache not usable, falling back to device code")
    if auth_method == "az-cache":
        raise AuthenticationError("az-cache auth selected but the Azure CLI token cache is disabled.")

    def prompt_callback(verification_uri: str, user_code: str, expires_on: Any) -> None:
        prompt(f"To sign in, open {verification_uri} and enter the code {user_code}")

    return DeviceCodeCredential(
        tenant_id=tenant_id or "organizations",
        client_id=device_client_id or AZURE_PUBLIC_CLIENT_ID,
        prompt_callback=prompt_callback,
    )


def _arm_error(resp: requests.Response) -> tuple[Optional[str], str]:
    try:
        body = resp.json()
    except ValueError:
        return None, resp.text[:200]
    err = body.get("error") if isinstance(body, dict) else None
    if isinstance(err, dict):
        return err.get("code"), str(err.get("message") or "")[:200]
    return None, resp.text[:200]


class AzureSession:
    """
    Per-run context shared by every component: one serialized credential,
    one HTTP session, and a cache of SDK clients keyed by subscription id.
    """

    def __init__(
        self,
        credential: Any,
        *,
        arm_base: str = ARM_BASE,
        graph_base: str = GRAPH_BASE,
        timeout: float = 60.0,
        http: Optional[requests.Session] = None,
    ) -> None:
        self.credential = credential if isinstance(credential, SerializedCredential) else SerializedCredential(credential)
        self.arm_base = arm_base.rstrip("/")
        self.graph_base = graph_base.rstrip("/")
        self.timeout = timeout
        self.http = http or requests.Session()
        self._clients_lock = threading.Lock()
        self._authz_clients: dict[str, AuthorizationManagementClient] = {}
        self._rm_clients: dict[str, ResourceManagementClient] = {}

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def arm_token(self) -> str:
        return self.credential.get_token(ARM_SCOPE).token

    def graph_token(self) -> str:
        return self.credential.get_token(GRAPH_SCOPE).token

    def authenticate(self) -> dict[str, Any]:
        """
        Acquire the ARM and Graph tokens up front so a missing directory
        permission fails the run before any scope is scanned. Returns the
        caller identity claims.
        """
        try:
            claims = jwt_claims(self.arm_token())
            self.graph_token()
        except AuthenticationError:
            raise
        except Exception as e:
            raise AuthenticationError(f"Azure authentication failed: {e}") from e
        return {
            "oid": claims.get("oid") or claims.get("http://schemas.microsoft.com/identity/claims/objectidentifier"),
            "upn": claims.get("upn") or claims.get("preferred_username"),
            "tid": claims.get("tid"),
        }

    # ------------------------------------------------------------------
    # Raw ARM calls
    # ------------------------------------------------------------------

    def _arm_url(self, path_or_url: str) -> str:
        if path_or_url.startswith("http"):
            return path_or_url
        return f"{self.arm_base}{path_or_url}"

    def arm_get(self, path_or_url: str, params: Optional[dict[str, str]] = None) -> dict[str, Any]:
        url = self._arm_url(path_or_url)
        r = self.http.get(
            url,
            headers={"Authorization": f"Bearer {self.arm_token()}"},
            params=params or {},
            timeout=self.timeout,
        )
        if r.status_code >= 400:
            code, msg = _arm_error(r)
            raise ArmRequestError("GET", url, r.status_code, code, msg)
        data = r.json()
        if not isinstance(data, dict):
            raise ArmRequestError("GET", url, r.status_code, None, "unexpected response (not a JSON object)")
        return data

    def arm_list(self, path_or_url: str, params: Optional[dict[str, str]] = None) -> list[dict[str, Any]]:
        url: Optional[str] = path_or_url
        out: list[dict[str, Any]] = []
        while url:
            data = self.arm_get(url, params)
            params = None  # nextLink carries the query
            vals = data.get("value") or []
            out.extend(v for v in vals if isinstance(v, dict))
            url = data.get("nextLink")
        return out

    def arm_delete(self, path_or_url: str, params: Optional[dict[str, str]] = None) -> int:
        url = self._arm_url(path_or_url)
        r = self.http.delete(
            url,
            headers={"Authorization": f"Bearer {self.arm_token()}"},
            params=params or {},
            timeout=self.timeout,
        )
        if r.status_code >= 400:
            code, msg = _arm_error(r)
            raise ArmRequestError("DELETE", url, r.status_code, code, msg)
        return r.status_code

    # ------------------------------------------------------------------
    # Graph
    # ------------------------------------------------------------------

    def graph_get(self, path: str, params: Optional[dict[str, str]] = None) -> requests.Response:
        return self.http.get(
            f"{self.graph_base}{path}",
            headers={"Authorization": f"Bearer {self.graph_token()}"},
            params=params or {},
            timeout=self.timeout,
        )

    # ------------------------------------------------------------------
    # SDK clients
    # ------------------------------------------------------------------

    def authorization_client(self, subscription_id: str) -> AuthorizationManagementClient:
        with self._clients_lock:
            client = self._authz_clients.get(subscription_id)
            if client is None:
                client = AuthorizationManagementClient(self.credential, subscription_id)
                self._authz_clients[subscription_id] = client
            return client

    def resource_client(self, subscription_id: str) -> ResourceManagementClient:
        with self._clients_lock:
            client = self._rm_clients.get(subscription_id)
            if client is None:
                client = ResourceManagementClient(self.credential, subscription_id)
                self._rm_clients[subscription_id] = client
            return client

    def list_subscriptions(self) -> list[dict[str, Any]]:
        out = []
        for s in self.arm_list("/subscriptions", {"api-version": "2022-12-01"}):
            sid = (s.get("subscriptionId") or "").strip()
            if sid:
                out.append({"subscription_id": sid, "display_name": s.get("displayName"), "state": s.get("state")})
        return out

    def close(self) -> None:
        with self._clients_lock:
            for c in list(self._authz_clients.values()) + list(self._rm_clients.values()):
                c.close()
            self._authz_clients.clear()
            self._rm_clients.clear()
        self.http.close()
        self.credential.close()

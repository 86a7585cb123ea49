# src/imigrate/imis/client.py
"""Authenticated iMIS REST client.

Every request goes through the same protocol:

1. Take the environment's cached bearer token, or acquire one with the
   password resident in the vault (MissingCredentialsError if none).
2. Send the request. Transport errors, 429 and 5xx are retried with
   exponential backoff by RetryManager.
3. A 401 that survives the retries means the token was revoked or expired
   early: drop it, acquire a fresh one, and replay the request exactly once
   (the replay gets its own transient retries). A second 401 is final.
4. Decode and validate the JSON body, normalizing both API generations
   into the shapes in ``imigrate.contracts.imis``.
"""

from __future__ import annotations

import functools
import json
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from imigrate.contracts import (
    AuthenticationFailedError,
    DataSource,
    DestinationDefinition,
    Environment,
    ImisRequestError,
    ImisResponseError,
    Page,
    QueryDefinition,
    SchemaMismatchError,
)
from imigrate.engine.retry import RetryConfig, RetryManager, is_transient
from imigrate.imis.normalize import (
    TokenResponse,
    build_entity_body,
    normalize_data_sources,
    normalize_entity_definition,
    normalize_entity_page,
    normalize_query_definition,
    normalize_query_page,
    parse,
)

if TYPE_CHECKING:
    from imigrate.core.config import ImisSettings
    from imigrate.core.security.vault import CredentialVault

logger = structlog.get_logger(__name__)

MAX_PAGE_SIZE = 500

_QUERY_DEFINITION_REQUEST_TYPE = "Asi.Soa.Core.DataContracts.GenericExecuteRequest, Asi.Contracts"
_OBJECT_COLLECTION_TYPE = "System.Collections.ObjectModel.Collection`1[[System.Object, mscorlib]], mscorlib"
_STRING_COLLECTION_TYPE = "System.Collections.ObjectModel.Collection`1[[System.String, mscorlib]], mscorlib"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ImisClient:
    """HTTP client for one or more iMIS environments.

    One instance is shared by every job; it is safe to call from many
    threads at once. Credentials come from the vault on every request, so
    setting or clearing a password takes effect immediately.

    Example:
        client = ImisClient(vault)
        page = client.fetch_query_page(env, "$/Contacts/All", offset=0, limit=500)
        created = client.insert_entity(dest_env, "CsContact", {"FirstName": "Ada"})
    """

    def __init__(
        self,
        vault: CredentialVault,
        *,
        retry: RetryManager | None = None,
        timeout: float = 30.0,
        verify: bool = True,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize client.

        Args:
            vault: Source of passwords and cache for tokens
            retry: Backoff policy for transient failures (default 0.5/1/2 s)
            timeout: Request timeout in seconds
            verify: Verify TLS certificates
            transport: Optional httpx transport (tests, proxies)
            clock: Current time, used to compute token expiry
        """
        self._vault = vault
        self._retry = retry or RetryManager(RetryConfig())
        self._clock = clock
        self._client = httpx.Client(
            timeout=timeout,
            verify=verify,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    @classmethod
    def from_settings(cls, vault: CredentialVault, settings: ImisSettings) -> ImisClient:
        return cls(
            vault,
            retry=RetryManager(RetryConfig.from_settings(settings.retry)),
            timeout=settings.timeout_seconds,
            verify=settings.verify_tls,
        )

    def close(self) -> None:
        """Close the underlying httpx client and release connections."""
        self._client.close()

    def __enter__(self) -> ImisClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @staticmethod
    def _resolve_url(environment: Environment, path: str) -> str:
        """Join base_url with path, handling slash combinations."""
        return f"{environment.base_url.rstrip('/')}/{path.lstrip('/')}"

    # === Transport ===

    def _send(
        self,
        method: str,
        url: str,
        *,
        token: str | None = None,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        form: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Send once. Raises for every failure except 401, which is returned."""
        headers = {"Authorization": f"Bearer {token}"} if token is not None else None
        try:
            response = self._client.request(method, url, params=params, json=json_body, data=form, headers=headers)
        except httpx.TransportError as e:
            raise ImisRequestError(f"{type(e).__name__}: {e}", url=url) from e
        if response.status_code == 401 or response.is_success:
            return response
        raise ImisResponseError(response.status_code, response.text, url=url)

    def _send_with_retry(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        def _log_retry(attempt: int, error: BaseException) -> None:
            logger.warning("Transient failure, retrying", method=method, url=url, attempt=attempt, error=str(error))

        return self._retry.execute_with_retry(
            functools.partial(self._send, method, url, **kwargs),
            is_retryable=is_transient,
            on_retry=_log_retry,
        )

    @staticmethod
    def _decode(response: httpx.Response, endpoint: str) -> Any:
        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise SchemaMismatchError(endpoint, f"response is not JSON: {e}") from e

    # === Tokens ===

    def _fetch_token(self, environment: Environment) -> str:
        """Exchange the resident password for a token. Caller holds the vault lock."""
        password = self._vault.require_password(environment.id)
        url = self._resolve_url(environment, "/token")
        try:
            response = self._send_with_retry(
                "POST",
                url,
                form={"grant_type": "password", "username": environment.username, "password": password},
            )
        except ImisResponseError as e:
            raise AuthenticationFailedError(
                f"Authentication failed for environment {environment.id}: HTTP {e.status_code}",
                status_code=e.status_code,
            ) from e
        if response.status_code == 401:
            raise AuthenticationFailedError(f"Authentication failed for environment {environment.id}: HTTP 401", status_code=401)

        token = parse(TokenResponse, self._decode(response, "POST /token"), "POST /token")
        self._vault.set_token(environment.id, token.access_token, self._clock() + timedelta(seconds=token.expires_in))
        logger.info("Authenticated", environment_id=environment.id, expires_in=token.expires_in)
        return token.access_token

    def _acquire_token(self, environment: Environment) -> str:
        token = self._vault.get_token(environment.id)
        if token is not None:
            return token
        with self._vault.lock(environment.id):
            # Another thread may have authenticated while we waited
            token = self._vault.get_token(environment.id)
            if token is not None:
                return token
            return self._fetch_token(environment)

    def _reauthenticate(self, environment: Environment, rejected_token: str) -> str:
        """Replace a token the server rejected, coalescing concurrent callers."""
        with self._vault.lock(environment.id):
            current = self._vault.get_token(environment.id)
            if current is not None and current != rejected_token:
                return current
            self._vault.clear_token(environment.id)
            logger.info("Token rejected, re-authenticating", environment_id=environment.id)
            return self._fetch_token(environment)

    def authenticate(self, environment: Environment) -> None:
        """Force a fresh token, e.g. to validate a newly entered password."""
        with self._vault.lock(environment.id):
            self._vault.clear_token(environment.id)
            self._fetch_token(environment)

    # === Authenticated requests ===

    def _request(
        self,
        environment: Environment,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
    ) -> Any:
        endpoint = f"{method} {path}"
        url = self._resolve_url(environment, path)
        token = self._acquire_token(environment)
        response = self._send_with_retry(method, url, token=token, params=params, json_body=json_body)
        if response.status_code == 401:
            token = self._reauthenticate(environment, token)
            response = self._send_with_retry(method, url, token=token, params=params, json_body=json_body)
            if response.status_code == 401:
                raise AuthenticationFailedError(
                    f"Request rejected after re-authentication: {endpoint}",
                    status_code=401,
                )
        return self._decode(response, endpoint)

    def check_connection(self, environment: Environment) -> None:
        """Verify credentials with the cheapest authenticated call available."""
        self._request(environment, "GET", "/api/party", params={"limit": 1})

    def list_data_sources(self, environment: Environment) -> list[DataSource]:
        payload = self._request(environment, "GET", "/api/BoEntityDefinition", params={"limit": MAX_PAGE_SIZE})
        return normalize_data_sources(payload, "GET /api/BoEntityDefinition")

    def get_entity_definition(self, environment: Environment, entity_type: str) -> DestinationDefinition:
        path = f"/api/BoEntityDefinition/{entity_type}"
        return normalize_entity_definition(self._request(environment, "GET", path), f"GET {path}")

    def get_query_definition(self, environment: Environment, query_path: str) -> QueryDefinition | None:
        """Look up a saved IQA query by path; None if there is no such query."""
        path = "/api/QueryDefinition/_execute"
        body = {
            "$type": _QUERY_DEFINITION_REQUEST_TYPE,
            "OperationName": "FindByPath",
            "EntityTypeName": "QueryDefinition",
            "Parameters": {"$type": _OBJECT_COLLECTION_TYPE, "$values": [{"$type": "System.String", "$value": query_path}]},
            "ParameterTypeName": {"$type": _STRING_COLLECTION_TYPE, "$values": ["System.String"]},
            "UseJson": False,
        }
        payload = self._request(environment, "POST", path, json_body=body)
        return normalize_query_definition(payload, f"POST {path}")

    def fetch_query_page(self, environment: Environment, query_path: str, *, offset: int, limit: int = MAX_PAGE_SIZE) -> Page:
        payload = self._request(
            environment,
            "GET",
            "/api/iqa",
            params={"QueryName": query_path, "Limit": min(limit, MAX_PAGE_SIZE), "Offset": offset},
        )
        return normalize_query_page(environment.api_version, payload, "GET /api/iqa")

    def fetch_entity_page(self, environment: Environment, entity_type: str, *, offset: int, limit: int = MAX_PAGE_SIZE) -> Page:
        path = f"/api/{entity_type}"
        payload = self._request(environment, "GET", path, params={"Limit": min(limit, MAX_PAGE_SIZE), "Offset": offset})
        return normalize_entity_page(payload, f"GET {path}")

    def insert_entity(self, environment: Environment, entity_type: str, properties: dict[str, Any]) -> Any:
        """POST a GenericEntityData body; returns the decoded response."""
        path = f"/api/{entity_type}"
        return self._request(environment, "POST", path, json_body=build_entity_body(entity_type, properties))

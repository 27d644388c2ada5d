"""Backup catalog REST client with token authentication and retries."""

import asyncio
import json
import logging
from collections.abc import AsyncGenerator, Awaitable, Callable, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import aiohttp

from surebackup.catalog.config import CatalogConfig
from surebackup.catalog.errors import (
    AuthenticationError,
    CatalogError,
    CatalogRequestError,
    TransientCatalogError,
)
from surebackup.catalog.models import (
    Backup,
    Job,
    Pagination,
    RestorePointRecord,
    RestoreSession,
    TokenResponse,
)
from surebackup.catalog.retry import (
    RetryPolicy,
    is_throttling_body,
    is_transient_status,
    parse_retry_after,
)
from surebackup.models.restore import RestorePoint, TestEnvironment

log = logging.getLogger(__name__)

TOKEN_ENDPOINT = "/api/oauth2/token"
API_PREFIX = "/api/v1"

# Refresh the token this many seconds before the server says it expires.
TOKEN_EXPIRY_MARGIN = 60.0


@dataclass(frozen=True, kw_only=True)
class AccessToken:
    """An issued bearer token and the loop time after which it is stale."""

    value: str = field(repr=False)
    expires_at: float | None = None

    def is_expired(self, now: float) -> bool:
        """Whether the token should be renewed before use."""
        return self.expires_at is not None and now >= self.expires_at


@dataclass(kw_only=True)
class CatalogClient:
    """Client for the backup management service.

    The bearer token is obtained once and shared by every call; it is
    renewed when it expires or when the server answers 401.
    """

    config: CatalogConfig
    session: aiohttp.ClientSession = field(repr=False)
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    _token: AccessToken | None = field(default=None, init=False, repr=False)
    _auth_lock: asyncio.Lock = field(
        default_factory=asyncio.Lock, init=False, repr=False
    )

    @classmethod
    @asynccontextmanager
    async def from_config(
        cls, config: CatalogConfig
    ) -> AsyncGenerator["CatalogClient", None]:
        """Create client with managed session lifecycle."""
        headers = {
            "Accept": "application/json",
            "x-api-version": config.api_version,
        }
        connector = aiohttp.TCPConnector(ssl=None if config.verify_tls else False)
        async with aiohttp.ClientSession(
            base_url=config.base_url,
            headers=headers,
            connector=connector,
            timeout=aiohttp.ClientTimeout(total=config.request_timeout),
        ) as session:
            yield cls(
                config=config,
                session=session,
                retry_policy=RetryPolicy(
                    max_retries=config.max_retries,
                    backoff_cap=config.backoff_cap,
                ),
            )

    @property
    def is_authenticated(self) -> bool:
        """Whether a token has been obtained."""
        return self._token is not None

    async def authenticate(self) -> str:
        """Exchange the configured credentials for a bearer token.

        Raises:
            AuthenticationError: If no token was issued within the retry budget

        """
        async with self._auth_lock:
            token = await self._issue_token()
        return token.value

    async def call(
        self,
        endpoint: str,
        method: str = "GET",
        body: Any = None,
        *,
        params: Mapping[str, str] | None = None,
    ) -> Any:
        """Issue an authenticated, retried request and return the JSON body."""
        return await self._with_retry(
            f"{method} {endpoint}",
            lambda: self._send(method, endpoint, body, params),
        )

    async def download(self, endpoint: str, destination: Path) -> Path:
        """Stream a catalog resource to a local file.

        The body is written next to ``destination`` and only moved into place
        once complete, so a failed download leaves no partial file and an
        existing file untouched.
        """
        partial = destination.with_name(f"{destination.name}.part")

        async def _fetch() -> Path:
            headers = await self._auth_headers()
            try:
                async with self.session.get(endpoint, headers=headers) as response:
                    await self._raise_for_status(response, "GET", endpoint)
                    with partial.open("wb") as fh:
                        async for chunk in response.content.iter_chunked(65536):
                            fh.write(chunk)
                partial.replace(destination)
            except (aiohttp.ClientConnectionError, TimeoutError) as e:
                raise TransientCatalogError(f"GET {endpoint} failed: {e}") from e
            finally:
                partial.unlink(missing_ok=True)
            return destination

        result = await self._with_retry(f"download {endpoint}", _fetch)
        log.info("Downloaded %s to %s", endpoint, destination)
        return result

    async def list_collection(
        self, endpoint: str, params: Mapping[str, str] | None = None
    ) -> Sequence[Mapping[str, Any]]:
        """Fetch every item of a paged collection."""
        items: list[Mapping[str, Any]] = []
        limit = self.config.page_size
        skip = 0

        while True:
            page_params = {**(params or {}), "skip": str(skip), "limit": str(limit)}
            page = await self.call(endpoint, params=page_params) or {}
            data = page.get("data", [])
            items.extend(data)
            skip += len(data)

            total = None
            if (pagination := page.get("pagination")) is not None:
                total = Pagination.model_validate(pagination).total

            if len(data) < limit or (total is not None and skip >= total):
                break

        return items

    async def list_jobs(self) -> Sequence[Job]:
        """List backup jobs."""
        items = await self.list_collection(f"{API_PREFIX}/jobs")
        return [Job.model_validate(item) for item in items]

    async def list_backups(self) -> Sequence[Backup]:
        """List backups."""
        items = await self.list_collection(f"{API_PREFIX}/backups")
        return [Backup.model_validate(item) for item in items]

    async def list_restore_points(self, backup_id: str) -> Sequence[RestorePointRecord]:
        """List restore points of a backup."""
        items = await self.list_collection(
            f"{API_PREFIX}/backups/{backup_id}/restorePoints"
        )
        return [RestorePointRecord.model_validate(item) for item in items]

    async def start_restore(
        self,
        restore_point: RestorePoint,
        environment: TestEnvironment,
        vm_name: str,
        vm_size: str,
    ) -> RestoreSession:
        """Submit a powered-on restore of a restore point into the environment."""
        payload = {
            "restorePointId": restore_point.restore_point_id,
            "reason": f"Recoverability test of {restore_point.vm_name}",
            "destination": {
                "resourceGroup": environment.resource_group_name,
                "region": environment.region,
                "vmName": vm_name,
                "vmSize": vm_size,
                "virtualNetworkId": environment.network_id,
                "subnetId": environment.subnet_id,
                "powerOn": True,
            },
        }
        data = await self.call(f"{API_PREFIX}/restoreSessions", "POST", payload)
        if not isinstance(data, Mapping):
            raise CatalogRequestError("Restore session not found in response")
        return RestoreSession.model_validate(data)

    async def get_restore_session(self, session_id: str) -> RestoreSession:
        """Get a restore session by ID."""
        data = await self.call(f"{API_PREFIX}/restoreSessions/{session_id}")
        return RestoreSession.model_validate(data)

    async def _with_retry[R](
        self, description: str, operation: Callable[[], Awaitable[R]]
    ) -> R:
        """Run an operation, retrying transient failures with backoff."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except TransientCatalogError as e:
                if attempt > self.retry_policy.max_retries:
                    log.error(
                        "%s failed after %d attempt(s): %s", description, attempt, e
                    )
                    raise
                delay = self.retry_policy.delay(attempt, e.retry_after)
                log.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                    description,
                    attempt,
                    self.retry_policy.max_retries + 1,
                    e,
                    delay,
                )
                await asyncio.sleep(delay)

    async def _request_token(self) -> TokenResponse:
        form = {
            "grant_type": "password",
            "username": self.config.username,
            "password": self.config.password.get_secret_value(),
        }
        try:
            async with self.session.post(TOKEN_ENDPOINT, data=form) as response:
                if response.status != 200:
                    text = await response.text()
                    # Every token failure is retried within the budget.
                    raise TransientCatalogError(
                        f"Token request failed: {response.status} {text}",
                        status=response.status,
                        retry_after=parse_retry_after(response.headers),
                    )
                data = await response.json(content_type=None)
        except (aiohttp.ClientConnectionError, TimeoutError) as e:
            raise TransientCatalogError(f"Token request failed: {e}") from e

        return TokenResponse.model_validate(data)

    async def _issue_token(self) -> AccessToken:
        try:
            response = await self._with_retry("authenticate", self._request_token)
        except CatalogError as e:
            raise AuthenticationError(
                f"Authentication to {self.config.server} failed: {e}",
                status=e.status,
            ) from e

        expires_at = None
        if response.expires_in is not None:
            now = asyncio.get_running_loop().time()
            expires_at = now + max(response.expires_in - TOKEN_EXPIRY_MARGIN, 0)
        self._token = AccessToken(value=response.access_token, expires_at=expires_at)
        log.info("Authenticated to backup server %s", self.config.server)
        return self._token

    async def _auth_headers(self) -> Mapping[str, str]:
        async with self._auth_lock:
            token = self._token
            if token is None or token.is_expired(asyncio.get_running_loop().time()):
                token = await self._issue_token()
        return {"Authorization": f"Bearer {token.value}"}

    async def _send(
        self,
        method: str,
        endpoint: str,
        body: Any,
        params: Mapping[str, str] | None,
        *,
        allow_reauth: bool = True,
    ) -> Any:
        headers = await self._auth_headers()
        try:
            async with self.session.request(
                method, endpoint, json=body, params=params, headers=headers
            ) as response:
                if response.status == 401 and allow_reauth:
                    log.info("Access token rejected, re-authenticating")
                    self._token = None
                else:
                    await self._raise_for_status(response, method, endpoint)
                    if response.status == 204:
                        return None
                    text = await response.text()
                    return json.loads(text) if text else None
        except (aiohttp.ClientConnectionError, TimeoutError) as e:
            raise TransientCatalogError(f"{method} {endpoint} failed: {e}") from e

        return await self._send(method, endpoint, body, params, allow_reauth=False)

    async def _raise_for_status(
        self, response: aiohttp.ClientResponse, method: str, endpoint: str
    ) -> None:
        if response.status < 400:
            return

        text = await response.text()
        message = f"{method} {endpoint} failed: {response.status} {text}"

        if response.status == 401:
            raise AuthenticationError(message, status=response.status)

        try:
            error_body = json.loads(text) if text else None
        except ValueError:
            error_body = None

        if is_transient_status(response.status) or is_throttling_body(error_body):
            raise TransientCatalogError(
                message,
                status=response.status,
                retry_after=parse_retry_after(response.headers),
            )
        raise CatalogRequestError(message, status=response.status)

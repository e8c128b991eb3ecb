"""
HTTP client for the remote time-tracking API.

Every entity collection follows the same REST shape:
    GET    /api/<collection>          list (optionally filtered / paginated)
    GET    /api/<collection>/<id>     fetch one
    POST   /api/<collection>          create
    PATCH  /api/<collection>/<id>     partial update
    DELETE /api/<collection>/<id>     delete

Transport and HTTP failures are mapped to ApiError; nothing is retried here.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Type, Union

import aiohttp
from pydantic import ValidationError as ModelValidationError

from tikker.domain.errors import ApiError, ConfigurationError, ServerConnectionError
from tikker.domain.models import (
    Activity,
    AuthConfig,
    AuthType,
    ConnectionState,
    Customer,
    Page,
    Project,
    ServerVersion,
    Task,
    TimeEntry,
    User,
    WireModel,
)

logger = logging.getLogger(__name__)

Payload = Union[Mapping[str, Any], WireModel]


@dataclass(frozen=True)
class Collection:
    """Where a collection lives on the server and how its list is shaped"""
    path: str
    model: Type[WireModel]
    paginated: bool = False


COLLECTIONS: Dict[str, Collection] = {
    "customers": Collection("/api/customers", Customer),
    "projects": Collection("/api/projects", Project),
    "activities": Collection("/api/activities", Activity),
    "time_entries": Collection("/api/timesheets", TimeEntry, paginated=True),
    "tasks": Collection("/api/tasks", Task, paginated=True),
}


def validate_auth_config(auth: AuthConfig) -> None:
    """
    Fail fast on a structurally incomplete profile.

    Raises:
        ConfigurationError: base URL missing, or the credentials required by
            the auth type are missing
    """
    if not auth.base_url:
        raise ConfigurationError("Server URL is required")
    if auth.type == AuthType.API_TOKEN and not auth.api_token:
        raise ConfigurationError("API token is required for token authentication")
    if auth.type == AuthType.LEGACY and not (auth.username and auth.password):
        raise ConfigurationError("Username and password are required for legacy authentication")


def _query(params: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """Drop unset filters and stringify the rest for the query string"""
    query: Dict[str, str] = {}
    for key, value in (params or {}).items():
        if value is None:
            continue
        if isinstance(value, (datetime, date)):
            value = value.isoformat()
        elif isinstance(value, bool):
            value = "true" if value else "false"
        query[key] = str(value)
    return query


def _payload(data: Payload) -> Dict[str, Any]:
    if isinstance(data, WireModel):
        return data.to_payload()
    return dict(data)


class KimaiApiClient:
    """
    Authenticated request/response exchange with one server.

    Holds no state other than the auth configuration, the HTTP session and the
    connection status.
    """

    def __init__(self, auth: Optional[AuthConfig] = None, timeout: float = 15.0, verify_ssl: bool = True):
        self.auth = auth or AuthConfig()
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.verify_ssl = verify_ssl
        self.current_user: Optional[User] = None
        self.server_config: Dict[str, Any] = {}
        self._state = ConnectionState()
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def base_url(self) -> str:
        return self.auth.base_url.rstrip("/")

    @property
    def is_connected(self) -> bool:
        return self._state.is_connected

    @property
    def connection_state(self) -> ConnectionState:
        return self._state.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(self, auth: Optional[AuthConfig] = None) -> ConnectionState:
        """
        Validate the profile, then check version, config and identity in order.

        Raises:
            ConfigurationError: the profile is incomplete (no request is made)
            ServerConnectionError: a check failed; `stage` names which one
        """
        if auth is not None:
            if auth != self.auth:
                await self.close()
            self.auth = auth
        validate_auth_config(self.auth)

        self._state = ConnectionState(is_connecting=True)
        logger.info(f"Connecting to {self.base_url}")

        stage = "version"
        try:
            version = await self.get_version()
            stage = "config"
            self.server_config = await self.get_config()
            stage = "identity"
            self.current_user = await self.get_current_user()
        except (ApiError, ModelValidationError) as e:
            logger.warning(f"Connect to {self.base_url} failed at {stage} check: {e}")
            self.current_user = None
            self._state = ConnectionState(error=str(e))
            raise ServerConnectionError(stage, e) from e

        self._state = ConnectionState(
            is_connected=True,
            last_connected=datetime.now(),
            version=version,
        )
        logger.info(f"Connected to {self.base_url} as {self.current_user.username} (server {version.version})")
        return self.connection_state

    async def disconnect(self) -> None:
        await self.close()
        self.current_user = None
        self.server_config = {}
        self._state = ConnectionState()

    async def close(self) -> None:
        """Release the HTTP session"""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    # ------------------------------------------------------------------
    # Server metadata
    # ------------------------------------------------------------------

    async def get_version(self) -> ServerVersion:
        return ServerVersion.model_validate(await self._request("GET", "/api/version") or {})

    async def get_config(self) -> Dict[str, Any]:
        return await self._request("GET", "/api/config") or {}

    async def get_current_user(self) -> User:
        return User.model_validate(await self._request("GET", "/api/user/me"))

    # ------------------------------------------------------------------
    # Uniform CRUD
    # ------------------------------------------------------------------

    async def list_entities(self, collection: str, params: Optional[Mapping[str, Any]] = None) -> Union[List[Any], Page]:
        """
        List a collection. Catalog collections return a plain list; time
        entries and tasks return a Page envelope.
        """
        endpoint = COLLECTIONS[collection]
        data = await self._request("GET", endpoint.path, params=params) or []
        if not endpoint.paginated:
            return [endpoint.model.model_validate(item) for item in data]

        if isinstance(data, list):
            return Page.wrap([endpoint.model.model_validate(item) for item in data])
        return Page[endpoint.model].model_validate(data)

    async def get_entity(self, collection: str, entity_id: int) -> Any:
        endpoint = COLLECTIONS[collection]
        return endpoint.model.model_validate(await self._request("GET", f"{endpoint.path}/{entity_id}"))

    async def create_entity(self, collection: str, data: Payload) -> Any:
        endpoint = COLLECTIONS[collection]
        return endpoint.model.model_validate(await self._request("POST", endpoint.path, json=_payload(data)))

    async def update_entity(self, collection: str, entity_id: int, data: Payload) -> Any:
        endpoint = COLLECTIONS[collection]
        return endpoint.model.model_validate(
            await self._request("PATCH", f"{endpoint.path}/{entity_id}", json=_payload(data))
        )

    async def delete_entity(self, collection: str, entity_id: int) -> None:
        endpoint = COLLECTIONS[collection]
        await self._request("DELETE", f"{endpoint.path}/{entity_id}")

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    async def get_customers(self) -> List[Customer]:
        return await self.list_entities("customers")

    async def get_customer(self, customer_id: int) -> Customer:
        return await self.get_entity("customers", customer_id)

    async def create_customer(self, data: Payload) -> Customer:
        return await self.create_entity("customers", data)

    async def update_customer(self, customer_id: int, data: Payload) -> Customer:
        return await self.update_entity("customers", customer_id, data)

    async def delete_customer(self, customer_id: int) -> None:
        await self.delete_entity("customers", customer_id)

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    async def get_projects(self, customer_id: Optional[int] = None) -> List[Project]:
        return await self.list_entities("projects", {"customer": customer_id or None})

    async def get_project(self, project_id: int) -> Project:
        return await self.get_entity("projects", project_id)

    async def create_project(self, data: Payload) -> Project:
        return await self.create_entity("projects", data)

    async def update_project(self, project_id: int, data: Payload) -> Project:
        return await self.update_entity("projects", project_id, data)

    async def delete_project(self, project_id: int) -> None:
        await self.delete_entity("projects", project_id)

    # ------------------------------------------------------------------
    # Activities
    # ------------------------------------------------------------------

    async def get_activities(self, project_id: Optional[int] = None) -> List[Activity]:
        return await self.list_entities("activities", {"project": project_id or None})

    async def get_activity(self, activity_id: int) -> Activity:
        return await self.get_entity("activities", activity_id)

    async def create_activity(self, data: Payload) -> Activity:
        return await self.create_entity("activities", data)

    async def update_activity(self, activity_id: int, data: Payload) -> Activity:
        return await self.update_entity("activities", activity_id, data)

    async def delete_activity(self, activity_id: int) -> None:
        await self.delete_entity("activities", activity_id)

    # ------------------------------------------------------------------
    # Time entries
    # ------------------------------------------------------------------

    async def get_time_entries(self, **filters) -> Page:
        """Filters: user, customer, project, activity, begin, end, page, size"""
        return await self.list_entities("time_entries", filters)

    async def get_time_entry(self, entry_id: int) -> TimeEntry:
        return await self.get_entity("time_entries", entry_id)

    async def create_time_entry(self, data: Payload) -> TimeEntry:
        return await self.create_entity("time_entries", data)

    async def update_time_entry(self, entry_id: int, data: Payload) -> TimeEntry:
        return await self.update_entity("time_entries", entry_id, data)

    async def delete_time_entry(self, entry_id: int) -> None:
        await self.delete_entity("time_entries", entry_id)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def get_tasks(self, **filters) -> Page:
        """Filters: user, customer, project, activity, status, page, size"""
        return await self.list_entities("tasks", filters)

    async def get_task(self, task_id: int) -> Task:
        return await self.get_entity("tasks", task_id)

    async def create_task(self, data: Payload) -> Task:
        return await self.create_entity("tasks", data)

    async def update_task(self, task_id: int, data: Payload) -> Task:
        return await self.update_entity("tasks", task_id, data)

    async def delete_task(self, task_id: int) -> None:
        await self.delete_entity("tasks", task_id)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(ssl=self.verify_ssl)
            self._session = aiohttp.ClientSession(timeout=self.timeout, connector=connector)
        return self._session

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.auth.type == AuthType.API_TOKEN and self.auth.api_token:
            headers["Authorization"] = f"Bearer {self.auth.api_token}"
        return headers

    def _basic_auth(self) -> Optional[aiohttp.BasicAuth]:
        if self.auth.type == AuthType.LEGACY and self.auth.username and self.auth.password:
            return aiohttp.BasicAuth(self.auth.username, self.auth.password)
        return None

    async def _request(self, method: str, path: str, *, params: Optional[Mapping[str, Any]] = None,
                       json: Optional[Any] = None) -> Any:
        """
        Perform one request.

        Returns:
            The decoded JSON body, or None for 204 / empty responses

        Raises:
            ApiError: non-2xx status (code = status) or transport failure (code 0)
        """
        url = f"{self.base_url}{path}"
        try:
            async with self._get_session().request(
                method,
                url,
                params=_query(params),
                json=json,
                headers=self._headers(),
                auth=self._basic_auth(),
            ) as response:
                body = await response.read()
                if not 200 <= response.status < 300:
                    raise self._error_from(response.status, response.reason, body)
                if response.status == 204 or not body:
                    return None
                return self._decode(response.status, body)
        except asyncio.TimeoutError as e:
            logger.warning(f"{method} {path} timed out")
            raise ApiError(0, "Request timed out", {"method": method, "path": path}) from e
        except aiohttp.ClientError as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise ApiError(0, str(e) or "Network error", {"method": method, "path": path}) from e

    @staticmethod
    def _decode(status: int, body: bytes) -> Any:
        try:
            return json.loads(body)
        except ValueError as e:
            raise ApiError(status, "Server returned malformed JSON", {"body": body[:200].decode(errors="replace")}) from e

    @staticmethod
    def _error_from(status: int, reason: Optional[str], body: bytes) -> ApiError:
        """Best-effort ApiError; an unparsable error body gets a generic message"""
        try:
            details = json.loads(body) if body else {}
        except ValueError:
            details = {}
        message = details.get("message") if isinstance(details, dict) else None
        return ApiError(status, message or f"HTTP {status}: {reason or 'Error'}", details)

import json
import logging
import time
from typing import Callable, Dict, List, Optional, Tuple, Type, TypeVar

import httpx
from pydantic import ValidationError

from engine_adapters.cache import ByteCache
from engine_adapters.errors import ConfigurationError, OctopusApiError
from engine_adapters.redaction import redact_text, redact_url
from engine_adapters.resources import (
    Channel,
    Deployment,
    DeploymentProcessTemplate,
    Environment,
    Lifecycle,
    OctopusResource,
    PackageVersion,
    Project,
    ReferenceDataItem,
    Release,
    SearchPackageVersionsQuery,
    SelectedPackage,
    VariableSet,
)
from engine_adapters.retry_policy import RetrySchedule, api_call_schedule


MAX_TAKE = 2147483647
DEPLOYMENTS_TAKE = 10000
ENVIRONMENT_ID_PREFIX = "Environments-"

ALL_PROJECTS_KEY = "AllProjects"
ALL_CHANNELS_KEY = "AllChannels"

R = TypeVar("R", bound=OctopusResource)


class OctopusAdapter:
    """Typed access to the release server with caching and short retries.

    Every network call is wrapped in the API-call retry schedule. Reads of
    projects, variables, channels, lifecycles and environments go through the
    shared ``ByteCache``.
    """

    def __init__(
        self,
        base_url: str = "",
        api_key: str = "",
        space_id: str = "",
        cache: Optional[ByteCache] = None,
        retry: Optional[RetrySchedule] = None,
        request_timeout_seconds: Optional[float] = None,
        request_id_provider: Optional[Callable[[], str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url
        self.api_key = api_key
        self.space_id = space_id
        self.cache = cache if cache is not None else ByteCache()
        self.retry = retry or api_call_schedule()
        self.request_timeout_seconds = request_timeout_seconds
        self.request_id_provider = request_id_provider
        self._client = httpx.AsyncClient(transport=transport, timeout=request_timeout_seconds)
        self._logger = logging.getLogger("octoargosync.octopus")
        self._obs_logger = logging.getLogger("octoargosync.obs")

    async def aclose(self) -> None:
        await self._client.aclose()

    # Projects and variables

    async def list_projects(self, use_cache: bool = True) -> List[Project]:
        if use_cache:
            cached = self._cache_get_list(ALL_PROJECTS_KEY, Project)
            if cached is not None:
                return cached
        payload = await self._get("projects", params={"take": MAX_TAKE}, operation="list_projects")
        projects = [Project.model_validate(item) for item in payload.get("Items") or []]
        self._cache_set_list(ALL_PROJECTS_KEY, projects)
        return projects

    async def list_project_variables(self, project: Project) -> VariableSet:
        key = f"{project.id}-Variables"
        cached = self._cache_get_one(key, VariableSet)
        if cached is not None:
            return cached
        variable_set_id = project.variable_set_id or f"variableset-{project.id}"
        payload = await self._get(f"variables/{variable_set_id}", operation="list_project_variables")
        variables = VariableSet.model_validate(payload)
        self._cache_set_one(key, variables)
        return variables

    # Channels, lifecycles and environments

    async def list_channels(self, use_cache: bool = True) -> List[Channel]:
        if use_cache:
            cached = self._cache_get_list(ALL_CHANNELS_KEY, Channel)
            if cached is not None:
                return cached
        payload = await self._get("channels", params={"take": MAX_TAKE}, operation="list_channels")
        channels = [Channel.model_validate(item) for item in payload.get("Items") or []]
        self._cache_set_list(ALL_CHANNELS_KEY, channels)
        return channels

    async def get_default_channel(self, project: Project) -> Channel:
        key = f"{project.id}-DefaultChannel"
        cached = self._cache_get_one(key, Channel)
        if cached is not None:
            return cached
        channels = await self.list_channels(use_cache=False)
        matches = [c for c in channels if c.is_default and c.project_id == project.id]
        if len(matches) != 1:
            raise ConfigurationError(f"Could not find the default channel for the project {project.name}")
        self._cache_set_one(key, matches[0])
        return matches[0]

    async def get_channel(self, project: Project, name: str) -> Channel:
        channels = await self.list_channels()
        matches = [c for c in channels if c.name == name and c.project_id == project.id]
        if len(matches) != 1:
            raise ConfigurationError(f"Could not find the channel called {name} for the project {project.name}")
        return matches[0]

    async def get_lifecycle(self, lifecycle_id: str) -> Lifecycle:
        cached = self._cache_get_one(lifecycle_id, Lifecycle)
        if cached is not None:
            return cached
        payload = await self._get(
            "lifecycles",
            params={"ids": lifecycle_id, "take": 1},
            operation="get_lifecycle",
        )
        matches = [Lifecycle.model_validate(item) for item in payload.get("Items") or []]
        matches = [lifecycle for lifecycle in matches if lifecycle.id == lifecycle_id]
        if len(matches) != 1:
            raise ConfigurationError(f"Failed to find lifecycle with ID {lifecycle_id}")
        self._cache_set_one(lifecycle_id, matches[0])
        return matches[0]

    async def get_environment(self, name: str) -> Environment:
        if name.startswith(ENVIRONMENT_ID_PREFIX):
            return Environment(id=name, name=name)
        key = f"Environments-{name}"
        cached = self._cache_get_one(key, Environment)
        if cached is not None:
            return cached
        payload = await self._get("environments", params={"name": name}, operation="get_environment")
        matches = [Environment.model_validate(item) for item in payload.get("Items") or []]
        matches = [environment for environment in matches if environment.name == name]
        if len(matches) != 1:
            raise ConfigurationError(f"Failed to find an environment called {name}")
        self._cache_set_one(key, matches[0])
        return matches[0]

    # Releases and deployments

    async def list_releases(self, project: Project) -> List[Release]:
        payload = await self._get(
            f"projects/{project.id}/releases",
            params={"take": MAX_TAKE},
            operation="list_releases",
        )
        return [Release.model_validate(item) for item in payload.get("Items") or []]

    async def get_release_versions(self, project: Project) -> List[str]:
        return [release.version for release in await self.list_releases(project)]

    async def find_release(self, project: Project, version: str) -> Optional[Release]:
        for release in await self.list_releases(project):
            if release.version == version:
                return release
        return None

    async def list_deployments(self, release: Release) -> List[Deployment]:
        payload = await self._get(
            f"releases/{release.id}/deployments",
            params={"skip": 0, "take": DEPLOYMENTS_TAKE},
            operation="list_deployments",
        )
        return [Deployment.model_validate(item) for item in payload.get("Items") or []]

    async def get_progression(self, release: Release) -> List[ReferenceDataItem]:
        payload = await self._get(f"releases/{release.id}/progression", operation="get_progression")
        return [ReferenceDataItem.model_validate(item) for item in payload.get("Environments") or []]

    async def is_deployed(self, project: Project, version: str, environment: Environment) -> bool:
        release = await self.find_release(project, version)
        if release is None:
            return False
        deployments = await self.list_deployments(release)
        return any(deployment.environment_id == environment.id for deployment in deployments)

    async def get_latest_deployment_release(self, project: Project, environment: Environment) -> Optional[Release]:
        releases = await self.list_releases(project)
        releases.sort(key=_assembled_sort_key, reverse=True)
        for release in releases:
            progression = await self.get_progression(release)
            if any(item.id == environment.id for item in progression):
                return release
        return None

    async def get_deployment_process_template(self, project: Project, channel_id: str) -> DeploymentProcessTemplate:
        if not project.deployment_process_id:
            raise ConfigurationError(f"The project {project.name} has no deployment process")
        payload = await self._get(
            f"deploymentprocesses/{project.deployment_process_id}/template",
            params={"channel": channel_id},
            operation="get_deployment_process_template",
        )
        return DeploymentProcessTemplate.model_validate(payload)

    async def search_package_versions(self, feed_id: str, query: SearchPackageVersionsQuery) -> List[PackageVersion]:
        params: Dict[str, object] = {"packageId": query.package_id, "take": query.take}
        if query.pre_release_tag:
            params["preReleaseTag"] = query.pre_release_tag
        if query.version_range:
            params["versionRange"] = query.version_range
        payload = await self._get(
            f"feeds/{feed_id}/packages/versions",
            params=params,
            operation="search_package_versions",
        )
        return [PackageVersion.model_validate(item) for item in payload.get("Items") or []]

    async def create_release(
        self,
        channel_id: str,
        project_id: str,
        version: str,
        selected_packages: List[SelectedPackage],
    ) -> Release:
        body = {
            "ChannelId": channel_id,
            "ProjectId": project_id,
            "Version": version,
            "SelectedPackages": [package.model_dump(by_alias=True) for package in selected_packages],
        }
        payload = await self._post("releases", body, operation="create_release")
        release = Release.model_validate(payload)
        self._logger.info(
            "octopus.release_created release_id=%s project_id=%s version=%s packages=%s",
            release.id,
            project_id,
            version,
            len(selected_packages),
        )
        return release

    async def create_deployment(self, environment_id: str, release_id: str) -> Deployment:
        body = {"EnvironmentId": environment_id, "ReleaseId": release_id}
        payload = await self._post("deployments", body, operation="create_deployment")
        deployment = Deployment.model_validate(payload)
        self._logger.info(
            "octopus.deployment_created deployment_id=%s release_id=%s environment_id=%s",
            deployment.id,
            release_id,
            environment_id,
        )
        return deployment

    # Cache helpers; a failed write never hides the freshly fetched value

    def _cache_get_one(self, key: str, model: Type[R]) -> Optional[R]:
        data = self.cache.get(key)
        if data is None:
            return None
        try:
            return model.model_validate_json(data)
        except ValidationError:
            self._logger.warning("octopus.cache_corrupt key=%s", key)
            return None

    def _cache_get_list(self, key: str, model: Type[R]) -> Optional[List[R]]:
        data = self.cache.get(key)
        if data is None:
            return None
        try:
            return [model.model_validate(item) for item in json.loads(data)]
        except (ValueError, TypeError, ValidationError):
            self._logger.warning("octopus.cache_corrupt key=%s", key)
            return None

    def _cache_set_one(self, key: str, value: OctopusResource) -> None:
        self._cache_set(key, value.model_dump_json(by_alias=True).encode("utf-8"))

    def _cache_set_list(self, key: str, values: List[OctopusResource]) -> None:
        data = json.dumps([value.model_dump(mode="json", by_alias=True) for value in values])
        self._cache_set(key, data.encode("utf-8"))

    def _cache_set(self, key: str, data: bytes) -> None:
        try:
            self.cache.set(key, data)
        except Exception as exc:
            self._logger.warning("octopus.cache_set_failed key=%s error=%s", key, exc)

    # HTTP

    def _api_url(self, path: str) -> str:
        if not self.base_url:
            raise ConfigurationError("octoargosync-init-octoclienterror - OCTOPUS_SERVER must be defined")
        if not self.api_key:
            raise ConfigurationError("octoargosync-init-octoclienterror - OCTOPUS_API_KEY must be defined")
        root = f"{self.base_url.rstrip('/')}/api"
        if self.space_id:
            root = f"{root}/{self.space_id}"
        return f"{root}/{path.lstrip('/')}"

    async def _get(self, path: str, params: Optional[dict] = None, operation: str = "request") -> dict:
        url = self._api_url(path)
        payload, _ = await self.retry.call(self._request_json, "GET", url, params=params, operation=operation)
        return payload

    async def _post(self, path: str, body: dict, operation: str = "request") -> dict:
        url = self._api_url(path)
        payload, _ = await self.retry.call(self._request_json, "POST", url, body=body, operation=operation)
        return payload

    async def _request_json(
        self,
        method: str,
        url: str,
        params: Optional[dict] = None,
        body: Optional[dict] = None,
        operation: str = "request",
    ) -> Tuple[dict, int]:
        headers = {"X-Octopus-ApiKey": self.api_key, "Accept": "application/json"}
        request_id = self.request_id_provider() if self.request_id_provider else ""
        if request_id:
            headers["X-Request-Id"] = request_id
        start = time.monotonic()
        self._log_octopus_event("octopus_call_started", request_id, operation, url)
        try:
            response = await self._client.request(method, url, params=params, json=body, headers=headers)
        except httpx.HTTPError as exc:
            latency_ms = (time.monotonic() - start) * 1000
            message = redact_text(f"Octopus connection failed: {exc}")
            self._log_octopus_event(
                "octopus_call_failed",
                request_id,
                operation,
                url,
                outcome="FAILED",
                duration_ms=round(latency_ms, 1),
                error=message,
            )
            raise OctopusApiError(message) from exc
        latency_ms = (time.monotonic() - start) * 1000
        if response.status_code >= 400:
            snippet = _safe_snippet(response.text)
            message = f"Octopus HTTP {response.status_code}: {snippet}" if snippet else f"Octopus HTTP {response.status_code}"
            message = redact_text(message)
            self._log_octopus_event(
                "octopus_call_failed",
                request_id,
                operation,
                url,
                outcome="FAILED",
                duration_ms=round(latency_ms, 1),
                error=message,
                status_code=response.status_code,
            )
            self._logger.warning(
                "octopus.request method=%s url=%s status=%s latency_ms=%.1f error=%s",
                method,
                redact_url(url),
                response.status_code,
                latency_ms,
                message,
            )
            raise OctopusApiError(message, status_code=response.status_code)
        self._log_octopus_event(
            "octopus_call_succeeded",
            request_id,
            operation,
            url,
            outcome="SUCCESS",
            duration_ms=round(latency_ms, 1),
            status_code=response.status_code,
        )
        if not response.content:
            return {}, response.status_code
        try:
            payload = response.json()
        except ValueError:
            return {}, response.status_code
        return (payload if isinstance(payload, dict) else {}), response.status_code

    def _log_octopus_event(
        self,
        event: str,
        request_id: str,
        operation: str,
        url: str,
        outcome: Optional[str] = None,
        duration_ms: Optional[float] = None,
        error: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        fields = {
            "event": event,
            "request_id": request_id or "",
            "engine": "octopus",
            "operation": operation,
            "target": redact_url(url),
        }
        if outcome:
            fields["outcome"] = outcome
        if duration_ms is not None:
            fields["duration_ms"] = duration_ms
        if status_code is not None:
            fields["status_code"] = status_code
        if error:
            fields["error"] = redact_text(error)
        parts = [f"{key}={fields[key]}" for key in sorted(fields.keys())]
        self._obs_logger.info(" ".join(parts))


def _assembled_sort_key(release: Release):
    # Releases without an assembled time sort last when ordering newest first
    if release.assembled is None:
        return (0, 0.0)
    return (1, release.assembled.timestamp())


def _safe_snippet(value: str, limit: int = 240) -> str:
    if not value:
        return ""
    text = value.replace("\n", " ").replace("\r", " ")
    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + "..."

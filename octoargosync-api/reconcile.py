import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set, Tuple

from tenacity import RetryCallState

from engine_adapters.errors import ConfigurationError
from engine_adapters.resources import Release
from engine_adapters.retry_policy import RetrySchedule, reconcile_schedule
from models import ApplicationUpdate, ExpandedProjectBinding, ProjectBinding
from observability import log_event
from package_resolver import PackageResolver
from project_matcher import environment_variable_name, match_projects
from versioning import ReleaseVersioner


logger = logging.getLogger("octoargosync.reconcile")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PendingAttempts:
    """Latest attempt timestamp per project in this process.

    Stored values only ever move forward, so a late ``record`` with an older
    timestamp does not revive a superseded attempt.
    """

    def __init__(self) -> None:
        self._latest: Dict[str, datetime] = {}

    def record(self, key: str, timestamp: datetime) -> datetime:
        current = self._latest.get(key)
        if current is None or timestamp > current:
            self._latest[key] = timestamp
        return self._latest[key]

    def latest(self, key: str) -> Optional[datetime]:
        return self._latest.get(key)

    def is_superseded(self, key: str, timestamp: datetime) -> bool:
        latest = self.latest(key)
        return latest is not None and latest > timestamp


def validate_lifecycle(project: ExpandedProjectBinding) -> None:
    """Raise ConfigurationError unless the environment is in the first lifecycle phase."""
    lifecycle = project.lifecycle
    if not lifecycle.phases:
        raise ConfigurationError(f"The lifecycle {lifecycle.name} has no phases")
    first = lifecycle.phases[0]
    environment_id = project.environment.id
    if environment_id not in first.automatic_deployment_targets and environment_id not in first.optional_deployment_targets:
        raise ConfigurationError(
            f"The lifecycle {lifecycle.name} must have the environment {project.environment.name} in the first phase"
        )


def auto_deploys(project: ExpandedProjectBinding) -> bool:
    phases = project.lifecycle.phases
    return bool(phases) and project.environment.id in phases[0].automatic_deployment_targets


class ReleaseReconciler:
    """Turns sync notifications into releases and deployments.

    ``reconcile`` runs image enrichment, discovery and expansion inline, then
    starts one long-retry task per matched project and returns those tasks.
    Failures are logged per stage or per project and never escape.
    """

    def __init__(
        self,
        octopus,
        argocd,
        versioner: ReleaseVersioner,
        resolver: Optional[PackageResolver] = None,
        retry: Optional[RetrySchedule] = None,
        pending: Optional[PendingAttempts] = None,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.octopus = octopus
        self.argocd = argocd
        self.versioner = versioner
        self.resolver = resolver or PackageResolver(octopus)
        self.retry = retry or reconcile_schedule()
        self.pending = pending or PendingAttempts()
        self.now = now
        self.applications_seen: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()

    async def reconcile(self, update: ApplicationUpdate) -> List[asyncio.Task]:
        update = await self._with_live_images(update)

        try:
            bindings = await self.discover(update)
        except Exception as exc:
            log_event(
                "octoargosync-release-failed",
                level="error",
                logger=logger,
                application=update.application_key,
                stage="discovery",
                error=str(exc),
            )
            return []

        if not bindings:
            log_event(
                "reconcile_no_matching_projects",
                logger=logger,
                application=update.application_key,
                hint=f"add the project variable {environment_variable_name(update.namespace, update.application)}",
            )
            return []

        tasks = []
        for binding in bindings:
            try:
                project = await self.expand(binding)
            except Exception as exc:
                log_event(
                    "octoargosync-release-failed",
                    level="error",
                    logger=logger,
                    project=binding.project.name,
                    application=update.application_key,
                    stage="expand",
                    error=str(exc),
                )
                continue
            attempt_at = self.now()
            self.pending.record(project.project.id, attempt_at)
            tasks.append(self._spawn(self._release_with_retry(project, update, attempt_at)))
        return tasks

    async def discover(self, update: ApplicationUpdate) -> List[ProjectBinding]:
        key = update.application_key
        # The first notification for an application may follow a brand new project
        use_cache = key in self.applications_seen
        self.applications_seen.add(key)
        projects = await self.octopus.list_projects(use_cache=use_cache)
        pairs = []
        for project in projects:
            pairs.append((project, await self.octopus.list_project_variables(project)))
        return list(match_projects(pairs, update.application, update.namespace))

    async def expand(self, binding: ProjectBinding) -> ExpandedProjectBinding:
        environment = await self.octopus.get_environment(binding.environment_name)
        if binding.channel_name:
            channel = await self.octopus.get_channel(binding.project, binding.channel_name)
        else:
            channel = await self.octopus.get_default_channel(binding.project)
        lifecycle_id = channel.lifecycle_id or binding.project.lifecycle_id
        if not lifecycle_id:
            raise ConfigurationError(f"The project {binding.project.name} has no lifecycle")
        lifecycle = await self.octopus.get_lifecycle(lifecycle_id)
        return ExpandedProjectBinding(
            project=binding.project,
            environment=environment,
            channel=channel,
            lifecycle=lifecycle,
            release_version_image=binding.release_version_image,
            package_versions=binding.package_versions,
        )

    async def attempt(
        self,
        project: ExpandedProjectBinding,
        update: ApplicationUpdate,
        attempt_at: datetime,
    ) -> Optional[Release]:
        """One pass of release creation and deployment; None when superseded."""
        if self.pending.is_superseded(project.project.id, attempt_at):
            self._log_superseded(project, "newer_notification")
            return None
        latest = await self.octopus.get_latest_deployment_release(project.project, project.environment)
        if latest is not None and latest.assembled is not None and latest.assembled > attempt_at:
            self._log_superseded(project, "newer_release")
            return None

        version = await self.versioner.generate_release_version(project, update)
        validate_lifecycle(project)
        release, created = await self.ensure_release(project, update, version)

        if created and auto_deploys(project):
            log_event(
                "reconcile_auto_deploy",
                logger=logger,
                project=project.project.name,
                release_id=release.id,
                version=release.version,
                environment=project.environment.name,
            )
            return release

        deployment = await self.octopus.create_deployment(project.environment.id, release.id)
        log_event(
            "reconcile_deployed",
            logger=logger,
            project=project.project.name,
            release_id=release.id,
            version=release.version,
            environment=project.environment.name,
            deployment_id=deployment.id,
        )
        return release

    async def ensure_release(
        self,
        project: ExpandedProjectBinding,
        update: ApplicationUpdate,
        version: str,
    ) -> Tuple[Release, bool]:
        existing = await self.octopus.find_release(project.project, version)
        if existing is not None:
            return existing, False
        packages = await self.resolver.resolve(project, update, project.channel)
        release = await self.octopus.create_release(project.channel.id, project.project.id, version, packages)
        return release, True

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _with_live_images(self, update: ApplicationUpdate) -> ApplicationUpdate:
        try:
            images = await self.argocd.get_images(update.application, update.namespace)
        except Exception as exc:
            log_event(
                "octoargosync-init-argoappimages",
                level="warning",
                logger=logger,
                application=update.application_key,
                error=str(exc),
            )
            images = []
        return update.model_copy(update={"images": images})

    async def _release_with_retry(
        self,
        project: ExpandedProjectBinding,
        update: ApplicationUpdate,
        attempt_at: datetime,
    ) -> Optional[Release]:
        def log_failed_attempt(retry_state: RetryCallState) -> None:
            outcome = retry_state.outcome
            log_event(
                "octoargosync-init-octocreatereleaseerror",
                level="warning",
                logger=logger,
                project=project.project.name,
                attempt=retry_state.attempt_number,
                error=str(outcome.exception()) if outcome is not None else "",
            )

        schedule = self.retry.with_before_sleep(log_failed_attempt)
        try:
            return await schedule.call(self.attempt, project, update, attempt_at)
        except Exception as exc:
            log_event(
                "octoargosync-release-failed",
                level="error",
                logger=logger,
                project=project.project.name,
                application=update.application_key,
                environment=project.environment.name,
                error=str(exc),
            )
            return None

    def _log_superseded(self, project: ExpandedProjectBinding, reason: str) -> None:
        log_event(
            "reconcile_superseded",
            logger=logger,
            project=project.project.name,
            environment=project.environment.name,
            reason=reason,
        )

    def _spawn(self, coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

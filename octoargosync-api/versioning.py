import logging
import re
from datetime import datetime
from typing import Callable, List, Optional

from models import ApplicationUpdate, ExpandedProjectBinding
from observability import log_event


# Loose semver: an optional leading "v" and missing minor or patch parts are
# accepted. Versions are compared as if normalised but never rewritten.
SEMVER_PATTERN = re.compile(
    r"^v?(\d+)(?:\.(\d+))?(?:\.(\d+))?"
    r"(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)

DATE_VERSION_FORMAT = "%Y.%m.%d.%H%M%S"
TIMESTAMP_VERSION_FORMAT = "%Y%m%d%H%M%S"
MAX_DEPLOYMENT_SUFFIX = 999

logger = logging.getLogger("octoargosync.versioning")


def is_semver(version: str) -> bool:
    return bool(version) and SEMVER_PATTERN.match(version) is not None


def semver_sort_key(version: str) -> tuple:
    parsed = _parse_semver(version)
    if not parsed:
        return (0, 0, 0, 0, [])
    major, minor, patch, prerelease = parsed
    if prerelease:
        prerelease_weight = 0
        prerelease_parts = [_semver_part_key(part) for part in prerelease.split(".")]
    else:
        prerelease_weight = 1
        prerelease_parts = []
    return (major, minor, patch, prerelease_weight, prerelease_parts)


def _parse_semver(version: str) -> Optional[tuple]:
    match = SEMVER_PATTERN.match(version or "")
    if not match:
        return None
    major, minor, patch, prerelease, _build = match.groups()
    return int(major), int(minor or 0), int(patch or 0), prerelease or ""


def _semver_part_key(part: str) -> tuple:
    if part.isdigit():
        return (0, int(part))
    return (1, part)


def order_tags(tags: List[str]) -> List[str]:
    """Highest semver first, then non-semver tags in descending lexical order."""
    semver_tags = sorted((t for t in tags if is_semver(t)), key=semver_sort_key, reverse=True)
    other_tags = sorted((t for t in tags if not is_semver(t)), reverse=True)
    return semver_tags + other_tags


class ReleaseVersioner:
    """Computes the release version for a project from a notification."""

    def __init__(self, now: Callable[[], datetime] = datetime.now) -> None:
        self.now = now

    async def generate_release_version(self, project: ExpandedProjectBinding, update: ApplicationUpdate) -> str:
        raise NotImplementedError

    def _image_version(self, project: ExpandedProjectBinding, update: ApplicationUpdate) -> Optional[str]:
        if not project.release_version_image:
            return None
        tags = order_tags(update.tags_for(project.release_version_image))
        return tags[0] if tags else None

    def _date_version(self) -> str:
        return self.now().strftime(DATE_VERSION_FORMAT)


class RedeploymentVersioner(ReleaseVersioner):
    """Target revision, then the release-version image tag, then a date version.

    Existing releases are ignored, so a redeployment in the sync controller maps
    to a redeployment of the same release.
    """

    async def generate_release_version(self, project: ExpandedProjectBinding, update: ApplicationUpdate) -> str:
        if is_semver(update.target_revision):
            return update.target_revision
        image_version = self._image_version(project, update)
        if image_version:
            return image_version
        return self._date_version()


class UniqueVersioner(ReleaseVersioner):
    """Like RedeploymentVersioner, but adds ``+deploymentN`` metadata when the
    candidate version is already deployed to the target environment.
    """

    def __init__(self, octopus, now: Callable[[], datetime] = datetime.now) -> None:
        super().__init__(now)
        self.octopus = octopus

    async def generate_release_version(self, project: ExpandedProjectBinding, update: ApplicationUpdate) -> str:
        releases = await self.octopus.get_release_versions(project.project)
        if is_semver(update.target_revision):
            return await self._unique(project, update.target_revision, releases)
        image_version = self._image_version(project, update)
        if image_version:
            return await self._unique(project, image_version, releases)
        return self._date_version()

    async def _unique(self, project: ExpandedProjectBinding, version: str, releases: List[str]) -> str:
        if not await self.octopus.is_deployed(project.project, version, project.environment):
            return version
        taken = set(releases)
        for count in range(2, MAX_DEPLOYMENT_SUFFIX + 1):
            candidate = f"{version}+deployment{count}"
            if candidate not in taken:
                return candidate
        fallback = self.now().strftime(TIMESTAMP_VERSION_FORMAT)
        log_event(
            "release_version_suffixes_exhausted",
            level="warning",
            logger=logger,
            project=project.project.name,
            version=version,
            fallback=fallback,
        )
        return fallback


def build_versioner(name: str, octopus, now: Callable[[], datetime] = datetime.now) -> ReleaseVersioner:
    if name == "unique":
        return UniqueVersioner(octopus, now)
    return RedeploymentVersioner(now)

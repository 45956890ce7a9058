import logging
from typing import Dict, List, Optional, Tuple

from engine_adapters.errors import OctopusApiError
from engine_adapters.resources import (
    Channel,
    ChannelRule,
    ReleaseTemplatePackage,
    SearchPackageVersionsQuery,
    SelectedPackage,
)
from models import ApplicationUpdate, ExpandedProjectBinding
from observability import log_event


logger = logging.getLogger("octoargosync.packages")


class PackageResolver:
    """Builds the package selections for a new release.

    The baseline is the latest feed version of every package in the deployment
    process template, honouring channel rules. Images named by the project's
    ``ImageForPackageVersion`` variables then override matching entries.
    """

    def __init__(self, octopus) -> None:
        self.octopus = octopus

    async def resolve(
        self,
        project: ExpandedProjectBinding,
        update: ApplicationUpdate,
        channel: Channel,
    ) -> List[SelectedPackage]:
        baseline = await self.baseline(project, channel)
        overrides = self.overrides(project, update)
        return merge_selections(baseline, overrides)

    async def baseline(self, project: ExpandedProjectBinding, channel: Channel) -> List[SelectedPackage]:
        template = await self.octopus.get_deployment_process_template(project.project, channel.id)
        memo: Dict[Tuple[str, SearchPackageVersionsQuery], str] = {}
        selections = []
        for package in template.packages:
            if not package.is_resolvable:
                version = ""
            else:
                version = await self._latest_version(package, channel, memo)
            selections.append(
                SelectedPackage(
                    action_name=package.action_name,
                    package_reference_name=package.package_reference_name,
                    version=version,
                )
            )
        return selections

    def overrides(self, project: ExpandedProjectBinding, update: ApplicationUpdate) -> List[SelectedPackage]:
        selections = []
        for binding in project.package_versions:
            tags = update.tags_for(binding.image)
            if not tags:
                log_event(
                    "octoargosync-init-argoimagenotfound",
                    level="warning",
                    logger=logger,
                    project=project.project.name,
                    image=binding.image,
                    application=update.application_key,
                )
                continue
            reference = parse_package_reference(binding.package_reference)
            if reference is None:
                log_event(
                    "octoargosync-init-octopackagereferenceerror",
                    level="warning",
                    logger=logger,
                    project=project.project.name,
                    package_reference=binding.package_reference,
                )
                continue
            action_name, package_reference_name = reference
            selections.append(
                SelectedPackage(
                    action_name=action_name,
                    package_reference_name=package_reference_name,
                    version=tags[0],
                )
            )
        return selections

    async def _latest_version(
        self,
        package: ReleaseTemplatePackage,
        channel: Channel,
        memo: Dict[Tuple[str, SearchPackageVersionsQuery], str],
    ) -> str:
        query = build_query(package, channel)
        key = (package.feed_id, query)
        if key in memo:
            return memo[key]
        results = await self.octopus.search_package_versions(package.feed_id, query)
        if len(results) > 1:
            raise OctopusApiError(
                f"Expected at most one version of {package.package_id} from feed {package.feed_id}, got {len(results)}"
            )
        version = results[0].version if results else ""
        memo[key] = version
        return version


def build_query(package: ReleaseTemplatePackage, channel: Channel) -> SearchPackageVersionsQuery:
    rule = matching_rule(package, channel)
    if rule is None:
        return SearchPackageVersionsQuery(package_id=package.package_id, take=1)
    return SearchPackageVersionsQuery(
        package_id=package.package_id,
        take=1,
        pre_release_tag=rule.tag or None,
        version_range=rule.version_range or None,
    )


def matching_rule(package: ReleaseTemplatePackage, channel: Channel) -> Optional[ChannelRule]:
    for rule in channel.rules:
        for action_package in rule.action_packages:
            if (
                action_package.deployment_action == package.action_name
                and (action_package.package_reference or "") == package.package_reference_name
            ):
                return rule
    return None


def parse_package_reference(reference: str) -> Optional[Tuple[str, str]]:
    """``action`` or ``action:package`` to ``(action, package)``; None when malformed."""
    parts = reference.split(":")
    if len(parts) == 1:
        return parts[0], ""
    if len(parts) == 2:
        return parts[0], parts[1]
    return None


def merge_selections(baseline: List[SelectedPackage], overrides: List[SelectedPackage]) -> List[SelectedPackage]:
    by_reference = {}
    for override in overrides:
        by_reference.setdefault(override.reference(), override)
    return [by_reference.get(package.reference(), package) for package in baseline]

"""Snapshots of release-server (Octopus Deploy) resources.

Only the fields the bridge reads are modelled; everything else in a payload is
ignored. Field names follow the server's PascalCase JSON through an alias
generator, so ``model_dump(by_alias=True)`` round-trips a cached payload.
"""

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_pascal


class OctopusResource(BaseModel):
    model_config = ConfigDict(alias_generator=to_pascal, populate_by_name=True, extra="ignore")


class Project(OctopusResource):
    id: str
    name: str = ""
    lifecycle_id: Optional[str] = None
    deployment_process_id: Optional[str] = None
    variable_set_id: Optional[str] = None


class Variable(OctopusResource):
    name: str = ""
    value: Optional[str] = None


class VariableSet(OctopusResource):
    owner_id: Optional[str] = None
    variables: List[Variable] = Field(default_factory=list)


class ActionPackage(OctopusResource):
    deployment_action: str = ""
    package_reference: Optional[str] = ""


class ChannelRule(OctopusResource):
    action_packages: List[ActionPackage] = Field(default_factory=list)
    tag: Optional[str] = None
    version_range: Optional[str] = None


class Channel(OctopusResource):
    id: str
    name: str = ""
    project_id: str = ""
    lifecycle_id: Optional[str] = None
    is_default: bool = False
    rules: List[ChannelRule] = Field(default_factory=list)


class Phase(OctopusResource):
    name: str = ""
    automatic_deployment_targets: List[str] = Field(default_factory=list)
    optional_deployment_targets: List[str] = Field(default_factory=list)


class Lifecycle(OctopusResource):
    id: str
    name: str = ""
    phases: List[Phase] = Field(default_factory=list)


class Environment(OctopusResource):
    id: str
    name: str = ""


class SelectedPackage(OctopusResource):
    action_name: str = ""
    package_reference_name: str = ""
    version: str = ""

    @field_validator("package_reference_name", "version", mode="before")
    @classmethod
    def _none_as_empty(cls, value):
        return "" if value is None else value

    def reference(self) -> tuple:
        return (self.action_name, self.package_reference_name)


class Release(OctopusResource):
    id: str
    version: str
    project_id: str = ""
    channel_id: Optional[str] = None
    assembled: Optional[datetime] = None
    selected_packages: List[SelectedPackage] = Field(default_factory=list)

    @field_validator("assembled")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class Deployment(OctopusResource):
    id: str
    environment_id: str = ""
    release_id: str = ""


class ReferenceDataItem(OctopusResource):
    id: str
    name: str = ""


class ReleaseTemplatePackage(OctopusResource):
    action_name: str = ""
    package_reference_name: str = ""
    feed_id: str = ""
    package_id: str = ""
    is_resolvable: bool = True

    @field_validator("package_reference_name", mode="before")
    @classmethod
    def _none_as_empty(cls, value):
        return "" if value is None else value


class DeploymentProcessTemplate(OctopusResource):
    packages: List[ReleaseTemplatePackage] = Field(default_factory=list)


class PackageVersion(OctopusResource):
    version: str


class SearchPackageVersionsQuery(OctopusResource):
    model_config = ConfigDict(alias_generator=to_pascal, populate_by_name=True, extra="ignore", frozen=True)

    package_id: str
    take: int = 1
    pre_release_tag: Optional[str] = None
    version_range: Optional[str] = None

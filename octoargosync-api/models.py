from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_pascal

from engine_adapters.resources import Channel, Environment, Lifecycle, Project


def split_image(image: str) -> Optional[Tuple[str, str]]:
    """Split ``repo:tag`` into its parts, or return None for an untagged image.

    The split happens on the last colon; a "tag" containing a slash means the
    colon belonged to a registry port (``host:5000/app``) and there is no tag.
    """
    if not isinstance(image, str) or ":" not in image:
        return None
    repository, tag = image.rsplit(":", 1)
    if not repository or not tag or "/" in tag:
        return None
    return repository, tag


class ApplicationUpdate(BaseModel):
    """Notification posted by the sync controller after an application reconciles."""

    model_config = ConfigDict(alias_generator=to_pascal, populate_by_name=True, extra="ignore")

    application: str = ""
    namespace: str = ""
    state: str = ""
    target_url: str = ""
    target_revision: str = ""
    commit_sha: str = ""
    images: List[str] = Field(default_factory=list)
    project: str = ""

    @field_validator("application", "namespace", "state", "target_url", "target_revision", "commit_sha", "project", mode="before")
    @classmethod
    def _none_as_empty(cls, value):
        return "" if value is None else value

    @field_validator("images", mode="before")
    @classmethod
    def _null_images(cls, value):
        return [] if value is None else value

    @property
    def application_key(self) -> str:
        return f"{self.namespace}/{self.application}"

    def tags_for(self, repository: str) -> List[str]:
        """Tags of every notification image whose repository equals ``repository``, in order."""
        tags = []
        for image in self.images:
            parts = split_image(image)
            if parts and parts[0] == repository:
                tags.append(parts[1])
        return tags


class ImagePackageBinding(BaseModel):
    image: str
    package_reference: str


class ProjectBinding(BaseModel):
    project: Project
    environment_name: str
    channel_name: str = ""
    release_version_image: str = ""
    package_versions: List[ImagePackageBinding] = Field(default_factory=list)


class ExpandedProjectBinding(BaseModel):
    project: Project
    environment: Environment
    channel: Channel
    lifecycle: Lifecycle
    release_version_image: str = ""
    package_versions: List[ImagePackageBinding] = Field(default_factory=list)


class StatusResponse(BaseModel):
    status: str
    message: Optional[str] = None

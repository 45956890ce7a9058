import re
from typing import Iterable, Iterator, List, Tuple

from engine_adapters.resources import Project, VariableSet
from models import ImagePackageBinding, ProjectBinding


_PREFIX = r"^Metadata\.ArgoCD\.Application\[([^\[\]]*?)\]"

ENVIRONMENT_VARIABLE = re.compile(_PREFIX + r"\.Environment$")
CHANNEL_VARIABLE = re.compile(_PREFIX + r"\.Channel$")
RELEASE_VERSION_IMAGE_VARIABLE = re.compile(_PREFIX + r"\.ImageForReleaseVersion$")
PACKAGE_VERSION_IMAGE_VARIABLE = re.compile(_PREFIX + r"\.ImageForPackageVersion\[([^\[\]]*?)\]$")


def environment_variable_name(namespace: str, application: str) -> str:
    return f"Metadata.ArgoCD.Application[{namespace}/{application}].Environment"


def match_project(project: Project, variables: VariableSet, application: str, namespace: str):
    """Return the ProjectBinding encoded in a project's variables, or None.

    Single-valued settings take the first non-blank value in server order.
    """
    key = f"{namespace}/{application}"
    environment_name = ""
    channel_name = ""
    release_version_image = ""
    package_versions: List[ImagePackageBinding] = []

    for variable in variables.variables:
        value = variable.value or ""
        if not value.strip():
            continue
        name = variable.name

        match = ENVIRONMENT_VARIABLE.match(name)
        if match and match.group(1) == key:
            if not environment_name:
                environment_name = value
            continue

        match = CHANNEL_VARIABLE.match(name)
        if match and match.group(1) == key:
            if not channel_name:
                channel_name = value
            continue

        match = RELEASE_VERSION_IMAGE_VARIABLE.match(name)
        if match and match.group(1) == key:
            if not release_version_image:
                release_version_image = value
            continue

        match = PACKAGE_VERSION_IMAGE_VARIABLE.match(name)
        if match and match.group(1) == key:
            package_versions.append(ImagePackageBinding(image=match.group(2), package_reference=value))

    if not environment_name:
        return None
    return ProjectBinding(
        project=project,
        environment_name=environment_name,
        channel_name=channel_name,
        release_version_image=release_version_image,
        package_versions=package_versions,
    )


def match_projects(
    projects_and_variables: Iterable[Tuple[Project, VariableSet]],
    application: str,
    namespace: str,
) -> Iterator[ProjectBinding]:
    for project, variables in projects_and_variables:
        binding = match_project(project, variables, application, namespace)
        if binding is not None:
            yield binding

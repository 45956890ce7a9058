import pytest

from engine_adapters.errors import OctopusApiError
from engine_adapters.resources import (
    ActionPackage,
    ChannelRule,
    DeploymentProcessTemplate,
    ReleaseTemplatePackage,
    SelectedPackage,
)
from fake_octopus import FakeOctopusAdapter
from models import ApplicationUpdate, ExpandedProjectBinding, ImagePackageBinding
from package_resolver import PackageResolver, merge_selections, parse_package_reference


pytestmark = pytest.mark.anyio


def _template() -> DeploymentProcessTemplate:
    return DeploymentProcessTemplate(
        packages=[
            ReleaseTemplatePackage(action_name="Deploy", package_reference_name="", feed_id="Feeds-1", package_id="web"),
            ReleaseTemplatePackage(
                action_name="Deploy", package_reference_name="sidecar", feed_id="Feeds-1", package_id="sidecar"
            ),
            ReleaseTemplatePackage(action_name="Migrate", package_reference_name="", feed_id="Feeds-1", package_id="web"),
            ReleaseTemplatePackage(
                action_name="Script", package_reference_name="", feed_id="Feeds-2", package_id="tools", is_resolvable=False
            ),
        ]
    )


async def _binding(octopus: FakeOctopusAdapter, package_versions=None) -> ExpandedProjectBinding:
    return ExpandedProjectBinding(
        project=octopus.project,
        environment=await octopus.get_environment("Development"),
        channel=await octopus.get_default_channel(octopus.project),
        lifecycle=await octopus.get_lifecycle("Lifecycles-1"),
        package_versions=package_versions or [],
    )


def _octopus() -> FakeOctopusAdapter:
    octopus = FakeOctopusAdapter()
    octopus.template = _template()
    octopus.feed_versions = {("Feeds-1", "web"): ["1.0.0"], ("Feeds-1", "sidecar"): ["2.0.0"]}
    return octopus


async def test_baseline_has_one_entry_per_template_package():
    octopus = _octopus()
    binding = await _binding(octopus)
    selections = await PackageResolver(octopus).baseline(binding, binding.channel)
    assert [(p.action_name, p.package_reference_name, p.version) for p in selections] == [
        ("Deploy", "", "1.0.0"),
        ("Deploy", "sidecar", "2.0.0"),
        ("Migrate", "", "1.0.0"),
        ("Script", "", ""),
    ]
    # identical queries are searched once; unresolvable packages are never searched
    assert [(feed, query.package_id) for feed, query in octopus.search_calls] == [
        ("Feeds-1", "web"),
        ("Feeds-1", "sidecar"),
    ]


async def test_channel_rule_sets_tag_and_range():
    octopus = _octopus()
    octopus.channels[0].rules.append(
        ChannelRule(
            action_packages=[ActionPackage(deployment_action="Deploy", package_reference="sidecar")],
            tag="^$",
            version_range="[2.0,3.0)",
        )
    )
    binding = await _binding(octopus)
    await PackageResolver(octopus).baseline(binding, binding.channel)
    queries = {query.package_id: query for _, query in octopus.search_calls}
    assert queries["sidecar"].pre_release_tag == "^$"
    assert queries["sidecar"].version_range == "[2.0,3.0)"
    assert queries["web"].pre_release_tag is None
    assert queries["web"].version_range is None


async def test_missing_feed_version_yields_empty_version():
    octopus = _octopus()
    octopus.feed_versions = {}
    binding = await _binding(octopus)
    selections = await PackageResolver(octopus).baseline(binding, binding.channel)
    assert {p.version for p in selections} == {""}


async def test_more_than_one_search_result_is_an_error():
    octopus = _octopus()
    octopus.feed_versions[("Feeds-1", "web")] = ["1.0.0", "0.9.0"]
    binding = await _binding(octopus)
    with pytest.raises(OctopusApiError):
        await PackageResolver(octopus).baseline(binding, binding.channel)


async def test_overrides_replace_matching_baseline_entries():
    octopus = _octopus()
    binding = await _binding(
        octopus,
        [
            ImagePackageBinding(image="registry/web", package_reference="Deploy"),
            ImagePackageBinding(image="registry/sidecar", package_reference="Deploy:sidecar"),
            ImagePackageBinding(image="registry/web", package_reference="Unknown"),
        ],
    )
    update = ApplicationUpdate(images=["registry/web:1.4.0", "registry/sidecar:2.1.0"])
    selections = await PackageResolver(octopus).resolve(binding, update, binding.channel)
    assert [(p.action_name, p.package_reference_name, p.version) for p in selections] == [
        ("Deploy", "", "1.4.0"),
        ("Deploy", "sidecar", "2.1.0"),
        ("Migrate", "", "1.0.0"),
        ("Script", "", ""),
    ]


async def test_override_with_missing_image_is_logged_and_skipped(caplog):
    octopus = _octopus()
    binding = await _binding(octopus, [ImagePackageBinding(image="registry/web", package_reference="Deploy")])
    caplog.set_level("WARNING")
    overrides = PackageResolver(octopus).overrides(binding, ApplicationUpdate(images=["registry/other:1.0.0"]))
    assert overrides == []
    assert "event=octoargosync-init-argoimagenotfound" in caplog.text


async def test_resolver_logs_under_its_own_logger(caplog):
    octopus = _octopus()
    binding = await _binding(octopus, [ImagePackageBinding(image="registry/web", package_reference="Deploy")])
    caplog.set_level("WARNING")
    PackageResolver(octopus).overrides(binding, ApplicationUpdate(images=[]))
    assert [r.name for r in caplog.records] == ["octoargosync.packages"]


async def test_malformed_package_reference_is_logged_and_skipped(caplog):
    octopus = _octopus()
    binding = await _binding(octopus, [ImagePackageBinding(image="registry/web", package_reference="a:b:c")])
    caplog.set_level("WARNING")
    overrides = PackageResolver(octopus).overrides(binding, ApplicationUpdate(images=["registry/web:1.0.0"]))
    assert overrides == []
    assert "event=octoargosync-init-octopackagereferenceerror" in caplog.text


def test_parse_package_reference():
    assert parse_package_reference("Deploy") == ("Deploy", "")
    assert parse_package_reference("Deploy:web") == ("Deploy", "web")
    assert parse_package_reference("a:b:c") is None


def test_merge_keeps_baseline_shape():
    baseline = [
        SelectedPackage(action_name="A", package_reference_name="", version="1"),
        SelectedPackage(action_name="B", package_reference_name="x", version="1"),
    ]
    overrides = [
        SelectedPackage(action_name="B", package_reference_name="x", version="2"),
        SelectedPackage(action_name="C", package_reference_name="", version="9"),
    ]
    merged = merge_selections(baseline, overrides)
    assert [p.reference() for p in merged] == [p.reference() for p in baseline]
    assert [p.version for p in merged] == ["1", "2"]

"""Tests for the GitHub release, container and crates.io publishers."""

from __future__ import annotations

import typing as typ

import pytest
from plumbum.commands.processes import ProcessExecutionError

from release_pipeline.checksums import HashlibChecksum
from release_pipeline.cmd_utils import RunResult
from release_pipeline.config import ContainerConfig, RegistryConfig
from release_pipeline.credentials import Credentials
from release_pipeline.errors import ConfigurationError, PublishError
from release_pipeline.graph import CancelToken, StageStatus
from release_pipeline.packager import Artifact, Packager
from release_pipeline.publishers import (
    ContainerPublisher,
    RegistryPublisher,
    ReleasePublisher,
    container,
    github,
    registry,
)
from release_pipeline.tags import parse_tag

from .conftest import tool, write_binary

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from release_pipeline.config import ReleaseConfig
    from release_pipeline.tags import ReleaseTag

    from .conftest import HarnessFactory, ModuleHarness

REPOSITORY = "achristmascarl/rainfrog"


@pytest.fixture
def artifacts(release_config: ReleaseConfig, tag: ReleaseTag) -> list[Artifact]:
    packager = Packager(release_config, tag, computer=HashlibChecksum())
    result = []
    for entry in release_config.matrix:
        write_binary(release_config, entry)
        result.append(packager.package(entry))
    return result


# GitHub release -----------------------------------------------------------


def _gh_responses(
    *,
    exists: bool = False,
    fail_create: bool = False,
    failing_upload: str | None = None,
) -> cabc.Callable[[list[str]], object]:
    def respond(argv: list[str]) -> object:
        action = argv[2]
        if action == "view":
            return RunResult(0 if exists else 1, "", "" if exists else "not found")
        failing = (action == "create" and fail_create) or (
            action == "upload"
            and failing_upload is not None
            and argv[4].endswith(failing_upload)
        )
        if failing:
            raise ProcessExecutionError(argv, 1, "", "HTTP 502: Bad Gateway")
        return ""

    return respond


@pytest.fixture
def gh_harness(module_harness: HarnessFactory) -> ModuleHarness:
    harness = module_harness(github)
    harness.patch_run_cmd(_gh_responses())
    return harness


def _release_publisher(
    credentials: Credentials, *, dry_run: bool = False
) -> ReleasePublisher:
    return ReleasePublisher(
        credentials, repository=REPOSITORY, dry_run=dry_run, gh=tool("gh")
    )


def test_release_is_created_and_every_file_uploaded(
    gh_harness: ModuleHarness,
    credentials: Credentials,
    tag: ReleaseTag,
    artifacts: list[Artifact],
) -> None:
    outcome = _release_publisher(credentials).publish(tag, artifacts, CancelToken())

    assert outcome.status is StageStatus.COMPLETE
    assert outcome.detail == "4 of 4 file(s) uploaded"
    assert gh_harness.calls[0] == ["gh", "release", "view", "v1.2.3"]
    assert gh_harness.calls[1] == [
        "gh",
        "release",
        "create",
        "v1.2.3",
        "--verify-tag",
        "--generate-notes",
        "--title",
        "v1.2.3",
    ]
    uploads = gh_harness.calls[2:]
    expected = [path for artifact in artifacts for path in artifact.files]
    assert uploads == [
        ["gh", "release", "upload", "v1.2.3", str(path), "--clobber"]
        for path in expected
    ]
    assert gh_harness.kwargs[0]["env"] == {
        "GH_TOKEN": "ghp-secret",
        "GH_REPO": REPOSITORY,
    }
    assert "ghp-secret" in gh_harness.kwargs[0]["redact"]


def test_existing_release_is_reused(
    gh_harness: ModuleHarness,
    credentials: Credentials,
    tag: ReleaseTag,
    artifacts: list[Artifact],
) -> None:
    gh_harness.patch_run_cmd(_gh_responses(exists=True))

    outcome = _release_publisher(credentials).publish(tag, artifacts, CancelToken())

    assert outcome.succeeded
    assert not any("create" in call for call in gh_harness.calls)


def test_failed_upload_makes_release_partial(
    gh_harness: ModuleHarness,
    credentials: Credentials,
    tag: ReleaseTag,
    artifacts: list[Artifact],
) -> None:
    failing = artifacts[1].checksum_path.name
    gh_harness.patch_run_cmd(_gh_responses(failing_upload=failing))

    outcome = _release_publisher(credentials).publish(tag, artifacts, CancelToken())

    assert outcome.status is StageStatus.PARTIAL
    assert outcome.detail == "3 of 4 file(s) uploaded"
    (error,) = outcome.errors
    assert isinstance(error, PublishError)
    assert error.artifact == failing
    assert "HTTP 502" in str(error)


def test_release_failed_when_no_upload_succeeds(
    gh_harness: ModuleHarness,
    credentials: Credentials,
    tag: ReleaseTag,
    artifacts: list[Artifact],
) -> None:
    gh_harness.patch_run_cmd(_gh_responses(failing_upload=""))

    outcome = _release_publisher(credentials).publish(tag, artifacts, CancelToken())

    assert outcome.status is StageStatus.FAILED


def test_create_failure_fails_release(
    gh_harness: ModuleHarness,
    credentials: Credentials,
    tag: ReleaseTag,
    artifacts: list[Artifact],
) -> None:
    gh_harness.patch_run_cmd(_gh_responses(fail_create=True))

    outcome = _release_publisher(credentials).publish(tag, artifacts, CancelToken())

    assert outcome.status is StageStatus.FAILED
    assert "HTTP 502" in outcome.detail
    assert len(gh_harness.calls) == 2


def test_missing_checksum_file_blocks_upload(
    gh_harness: ModuleHarness,
    credentials: Credentials,
    tag: ReleaseTag,
    artifacts: list[Artifact],
) -> None:
    artifacts[0].checksum_path.unlink()

    outcome = _release_publisher(credentials).publish(tag, artifacts, CancelToken())

    assert outcome.status is StageStatus.FAILED
    assert "missing" in str(outcome.errors[0])
    assert gh_harness.calls == []


def test_checksum_mismatch_blocks_upload(
    gh_harness: ModuleHarness,
    credentials: Credentials,
    tag: ReleaseTag,
    artifacts: list[Artifact],
) -> None:
    artifacts[1].archive_path.write_bytes(b"swapped after packaging")

    outcome = _release_publisher(credentials).publish(tag, artifacts, CancelToken())

    assert outcome.status is StageStatus.FAILED
    assert "checksum does not match" in str(outcome.errors[0])
    assert gh_harness.calls == []


def test_no_artifacts_fails(
    gh_harness: ModuleHarness, credentials: Credentials, tag: ReleaseTag
) -> None:
    outcome = _release_publisher(credentials).publish(tag, [], CancelToken())

    assert outcome.status is StageStatus.FAILED
    assert gh_harness.calls == []


def test_dry_run_only_prints_plan(
    gh_harness: ModuleHarness,
    credentials: Credentials,
    tag: ReleaseTag,
    artifacts: list[Artifact],
    capsys: pytest.CaptureFixture[str],
) -> None:
    publisher = _release_publisher(credentials, dry_run=True)

    outcome = publisher.publish(tag, artifacts, CancelToken())

    assert outcome.status is StageStatus.COMPLETE
    assert gh_harness.calls == []
    out = capsys.readouterr().out
    assert out.count("[dry-run] gh release upload") == 4


def test_cancel_stops_uploads(
    gh_harness: ModuleHarness,
    credentials: Credentials,
    tag: ReleaseTag,
    artifacts: list[Artifact],
) -> None:
    cancel = CancelToken()
    cancel.cancel()

    outcome = _release_publisher(credentials).publish(tag, artifacts, cancel)

    assert outcome.status is StageStatus.CANCELLED
    assert not any("upload" in call for call in gh_harness.calls)


def test_release_url(credentials: Credentials, tag: ReleaseTag) -> None:
    assert _release_publisher(credentials).release_url(tag) == (
        "https://github.com/achristmascarl/rainfrog/releases/tag/v1.2.3"
    )
    with pytest.raises(ConfigurationError):
        ReleasePublisher(credentials).release_url(tag)


# Container image ----------------------------------------------------------

CACHE_ENV = {
    "ACTIONS_CACHE_URL": "https://cache.example/",
    "ACTIONS_RUNTIME_TOKEN": "rt-secret",
}


def _container(
    credentials: Credentials,
    *,
    dry_run: bool = False,
    **config: typ.Any,  # noqa: ANN401
) -> ContainerPublisher:
    settings = {"repository": REPOSITORY, "cache_scope": "rainfrog"} | config
    return ContainerPublisher(
        ContainerConfig(**settings),
        credentials,
        dry_run=dry_run,
        docker=tool("docker"),
        environ=CACHE_ENV,
    )


def test_container_logs_in_then_pushes_both_tags(
    module_harness: HarnessFactory, credentials: Credentials, tag: ReleaseTag
) -> None:
    harness = module_harness(container)

    outcome = _container(credentials).publish(tag, CancelToken())

    assert outcome.status is StageStatus.COMPLETE
    assert harness.calls == [
        ["docker", "login", "--username", "frog-bot", "--password-stdin"],
        [
            "docker",
            "buildx",
            "build",
            "--push",
            "--tag",
            f"{REPOSITORY}:latest",
            "--tag",
            f"{REPOSITORY}:v1.2.3",
            "--cache-from",
            "type=gha,scope=rainfrog",
            "--cache-to",
            "type=gha,mode=max,scope=rainfrog",
            ".",
        ],
    ]
    assert harness.kwargs[1]["env"] == CACHE_ENV
    assert harness.kwargs[1]["method"] == "run_fg"
    for kwargs in harness.kwargs:
        assert {"dckr-secret", "rt-secret"} <= set(kwargs["redact"])
    assert all("dckr-secret" not in call for call in harness.calls)
    assert harness.stdin == ["dckr-secret", None]


def test_container_login_targets_custom_registry(credentials: Credentials) -> None:
    publisher = _container(
        credentials, registry="ghcr.io", dockerfile="Dockerfile.release"
    )

    assert publisher.login_args()[-1] == "ghcr.io"
    assert publisher.build_args(parse_tag("v1.2.3"))[-3:] == [
        "--file",
        "Dockerfile.release",
        ".",
    ]


def test_container_requires_credentials(
    module_harness: HarnessFactory, tag: ReleaseTag
) -> None:
    harness = module_harness(container)

    outcome = _container(Credentials()).publish(tag, CancelToken())

    assert outcome.status is StageStatus.FAILED
    assert "DOCKERHUB_TOKEN" in outcome.detail
    assert harness.calls == []


def test_container_requires_repository(
    module_harness: HarnessFactory, credentials: Credentials, tag: ReleaseTag
) -> None:
    module_harness(container)

    outcome = _container(credentials, repository=None).publish(tag, CancelToken())

    assert outcome.status is StageStatus.FAILED


def test_container_login_failure_stops_build(
    module_harness: HarnessFactory, credentials: Credentials, tag: ReleaseTag
) -> None:
    harness = module_harness(container)

    def reject(argv: list[str]) -> None:
        raise ProcessExecutionError(argv, 1, "", "unauthorized")

    harness.patch_run_cmd(reject)

    outcome = _container(credentials).publish(tag, CancelToken())

    assert outcome.status is StageStatus.FAILED
    assert "docker exited with status 1" in outcome.detail
    assert len(harness.calls) == 1


def test_container_dry_run_prints_redacted_commands(
    module_harness: HarnessFactory,
    credentials: Credentials,
    tag: ReleaseTag,
    capsys: pytest.CaptureFixture[str],
) -> None:
    harness = module_harness(container)

    outcome = _container(credentials, dry_run=True).publish(tag, CancelToken())

    assert outcome.succeeded
    assert harness.calls == []
    out = capsys.readouterr().out
    assert "[dry-run] docker buildx build" in out
    assert "frog-bot" not in out


def test_container_honours_cancellation(
    module_harness: HarnessFactory, credentials: Credentials, tag: ReleaseTag
) -> None:
    harness = module_harness(container)
    cancel = CancelToken()
    cancel.cancel()

    outcome = _container(credentials).publish(tag, cancel)

    assert outcome.status is StageStatus.CANCELLED
    assert harness.calls == []


# crates.io ----------------------------------------------------------------


def _registry(
    release_config: ReleaseConfig,
    credentials: Credentials,
    *,
    dry_run: bool = False,
    settings: RegistryConfig | None = None,
) -> RegistryPublisher:
    return RegistryPublisher(
        release_config.manifest,
        settings or RegistryConfig(),
        credentials,
        dry_run=dry_run,
        cargo=tool("cargo"),
    )


def test_registry_publishes_with_token(
    module_harness: HarnessFactory,
    release_config: ReleaseConfig,
    credentials: Credentials,
    tag: ReleaseTag,
) -> None:
    harness = module_harness(registry)

    outcome = _registry(release_config, credentials).publish(tag, CancelToken())

    assert outcome.status is StageStatus.COMPLETE
    assert outcome.detail == "published 1.2.3"
    assert harness.calls == [
        ["cargo", "publish", "--manifest-path", str(release_config.manifest)]
    ]
    assert harness.kwargs[0]["env"] == {"CARGO_REGISTRY_TOKEN": "cio-secret"}
    assert "cio-secret" in harness.kwargs[0]["redact"]


def test_registry_rejects_version_mismatch(
    module_harness: HarnessFactory,
    release_config: ReleaseConfig,
    credentials: Credentials,
) -> None:
    harness = module_harness(registry)

    outcome = _registry(release_config, credentials).publish(
        parse_tag("v1.2.4"), CancelToken()
    )

    assert outcome.status is StageStatus.FAILED
    assert "declares version 1.2.3 but the tag is v1.2.4" in outcome.detail
    assert harness.calls == []


def test_registry_requires_token(
    module_harness: HarnessFactory, release_config: ReleaseConfig, tag: ReleaseTag
) -> None:
    harness = module_harness(registry)

    outcome = _registry(release_config, Credentials()).publish(tag, CancelToken())

    assert outcome.status is StageStatus.FAILED
    assert "CARGO_REGISTRY_TOKEN" in outcome.detail
    assert harness.calls == []


def test_registry_config_flags(
    module_harness: HarnessFactory, release_config: ReleaseConfig, tag: ReleaseTag
) -> None:
    harness = module_harness(registry)
    publisher = _registry(
        release_config, Credentials(), settings=RegistryConfig(dry_run=True)
    )

    outcome = publisher.publish(tag, CancelToken())

    assert outcome.succeeded
    assert harness.calls[0][-1] == "--dry-run"
    assert harness.kwargs[0]["env"] == {}


def test_registry_allow_dirty(release_config: ReleaseConfig) -> None:
    publisher = _registry(
        release_config, Credentials(), settings=RegistryConfig(allow_dirty=True)
    )

    assert publisher.publish_args()[-1] == "--allow-dirty"


def test_registry_reports_cargo_failure(
    module_harness: HarnessFactory,
    release_config: ReleaseConfig,
    credentials: Credentials,
    tag: ReleaseTag,
) -> None:
    harness = module_harness(registry)

    def fail(argv: list[str]) -> None:
        raise ProcessExecutionError(argv, 101, "", "crate already uploaded")

    harness.patch_run_cmd(fail)

    outcome = _registry(release_config, credentials).publish(tag, CancelToken())

    assert outcome.status is StageStatus.FAILED
    assert "exited with status 101" in outcome.detail


def test_registry_dry_run_skips_cargo(
    module_harness: HarnessFactory,
    release_config: ReleaseConfig,
    tag: ReleaseTag,
    capsys: pytest.CaptureFixture[str],
) -> None:
    harness = module_harness(registry)

    outcome = _registry(release_config, Credentials(), dry_run=True).publish(
        tag, CancelToken()
    )

    assert outcome.succeeded
    assert harness.calls == []
    assert "[dry-run] cargo publish" in capsys.readouterr().out

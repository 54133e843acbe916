"""Tests for credential handling."""

from __future__ import annotations

from release_pipeline.credentials import Credentials


def test_repr_never_reveals_secrets(credentials: Credentials) -> None:
    rendered = repr(credentials)

    for secret in ("ghp-secret", "dckr-secret", "cio-secret", "frog-bot"):
        assert secret not in rendered
    assert "github_token=***" in rendered


def test_repr_marks_unset_values() -> None:
    assert "registry_token=<unset>" in repr(Credentials())


def test_from_env_reads_conventional_names() -> None:
    creds = Credentials.from_env(
        {
            "GITHUB_TOKEN": "gh",
            "DOCKERHUB_USERNAME": "user",
            "DOCKERHUB_TOKEN": "hub",
            "CARGO_REGISTRY_TOKEN": "",
        }
    )

    assert creds.github_token == "gh"
    assert creds.container_username == "user"
    assert creds.container_token == "hub"
    assert creds.registry_token is None


def test_gh_token_takes_precedence() -> None:
    creds = Credentials.from_env({"GH_TOKEN": "explicit", "GITHUB_TOKEN": "default"})

    assert creds.github_token == "explicit"


def test_secrets_skips_unset_values() -> None:
    assert Credentials(github_token="t").secrets() == ("t",)  # noqa: S106

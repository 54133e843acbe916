"""Comment on the issues and pull requests shipped in a release.

The commits between the previous tag and the release tag are scanned for
``#123`` references (including closing keywords such as ``fixes #123``) and
links to issues or pull requests of the same repository. Every referenced
number receives a comment linking to the release. Failures here are reported
as warnings and never fail the run.
"""

from __future__ import annotations

import re
import typing as typ

import httpx
import typer
from plumbum import local
from plumbum.commands import CommandNotFound
from plumbum.commands.processes import ProcessExecutionError, ProcessTimedOut

from .cmd_utils import RunResult, resolve_tool, run_cmd
from .errors import NotificationError
from .graph import StageOutcome, StageStatus

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from .config import NotifyConfig
    from .credentials import Credentials
    from .graph import CancelToken
    from .tags import ReleaseTag

__all__ = ["CHANNEL", "Notifier", "extract_references"]

CHANNEL = "notify"
_REFERENCE = re.compile(r"(?<![\w/#])#(\d+)\b")
_ERROR_DETAIL_LIMIT = 200
_COMMIT_SEPARATOR = "\x1e"


def extract_references(
    messages: cabc.Iterable[str], repository: str | None = None
) -> list[int]:
    """Return referenced issue and pull request numbers in first-seen order.

    Examples
    --------
    >>> extract_references(["Fix parser (fixes #12)", "Refs #7, #12"])
    [12, 7]
    """
    patterns = [_REFERENCE]
    if repository:
        patterns.append(
            re.compile(
                rf"https://github\.com/{re.escape(repository)}/(?:issues|pull)/(\d+)"
            )
        )
    numbers: list[int] = []
    for message in messages:
        found = sorted(
            (match.start(), int(match.group(1)))
            for pattern in patterns
            for match in pattern.finditer(message)
        )
        for _, number in found:
            if number not in numbers:
                numbers.append(number)
    return numbers


class Notifier:
    """Post "included in release" comments through the GitHub REST API.

    Parameters
    ----------
    config : NotifyConfig
        API base URL and comment template.
    credentials : Credentials
        Supplies the GitHub token used as a bearer token.
    repository : str
        ``owner/name`` of the repository being released.
    dry_run : bool
        List the comments that would be posted without posting them.
    transport : httpx.BaseTransport, optional
        Transport override for the HTTP client.
    """

    channel = CHANNEL

    def __init__(
        self,
        config: NotifyConfig,
        credentials: Credentials,
        repository: str,
        *,
        dry_run: bool = False,
        git: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.config = config
        self.credentials = credentials
        self.repository = repository
        self.dry_run = dry_run
        self._git = git
        self._transport = transport

    def _git_run(self, *args: str) -> RunResult:
        result = run_cmd(local[resolve_tool("git", self._git)][args], method="run")
        return typ.cast("RunResult", result)

    def previous_tag(self, tag: ReleaseTag) -> str | None:
        """Return the tag preceding *tag*, or ``None`` for the first release."""
        result = self._git_run("describe", "--tags", "--abbrev=0", f"{tag}^")
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def commit_messages(self, tag: ReleaseTag) -> list[str]:
        """Return the commit messages included in *tag*.

        Raises
        ------
        NotificationError
            If the history cannot be read.
        """
        previous = self.previous_tag(tag)
        revision = f"{previous}..{tag}" if previous else str(tag)
        result = self._git_run("log", f"--format=%B{_COMMIT_SEPARATOR}", revision)
        if result.returncode != 0:
            detail = result.stderr.strip() or f"exit status {result.returncode}"
            msg = f"git log {revision} failed: {detail}"
            raise NotificationError(msg)
        return [
            message.strip()
            for message in result.stdout.split(_COMMIT_SEPARATOR)
            if message.strip()
        ]

    def comment_body(self, tag: ReleaseTag, release_url: str) -> str:
        try:
            return self.config.comment_template.format(tag=tag, url=release_url)
        except (KeyError, IndexError, ValueError) as exc:
            msg = f"comment template is invalid: {type(exc).__name__}: {exc}"
            raise NotificationError(msg) from exc

    def _client(self) -> httpx.Client:
        headers = {
            "Authorization": f"Bearer {self.credentials.github_token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "release-pipeline",
        }
        return httpx.Client(
            base_url=self.config.api_url,
            headers=headers,
            timeout=httpx.Timeout(30.0),
            transport=self._transport,
        )

    def post_comment(self, client: httpx.Client, number: int, body: str) -> None:
        """Comment *body* on issue or pull request *number*.

        Raises
        ------
        NotificationError
            If the request fails or GitHub does not answer ``201 Created``.
        """
        path = f"/repos/{self.repository}/issues/{number}/comments"
        try:
            response = client.post(path, json={"body": body})
        except httpx.HTTPError as exc:
            msg = f"commenting on #{number} failed: {exc}"
            raise NotificationError(msg) from exc
        if response.status_code != httpx.codes.CREATED:
            detail = response.text.strip()[:_ERROR_DETAIL_LIMIT]
            detail = detail or response.reason_phrase
            status = response.status_code
            msg = f"commenting on #{number} failed with {status}: {detail}"
            raise NotificationError(msg)

    def _warn(self, error: NotificationError) -> None:
        typer.echo(f"::warning title=Release Notification::{error}", err=True)

    def _failed(self, error: NotificationError) -> StageOutcome:
        self._warn(error)
        return StageOutcome(self.channel, StageStatus.FAILED, str(error), [error])

    def notify(
        self, tag: ReleaseTag, release_url: str, cancel: CancelToken
    ) -> StageOutcome:
        """Comment on every issue referenced by the commits in *tag*."""
        try:
            if not (self.credentials.github_token or self.dry_run):
                msg = "GITHUB_TOKEN is not set; skipping release comments"
                raise NotificationError(msg)
            body = self.comment_body(tag, release_url)
            messages = self.commit_messages(tag)
        except NotificationError as exc:
            return self._failed(exc)
        except (ProcessExecutionError, ProcessTimedOut, CommandNotFound) as exc:
            return self._failed(
                NotificationError(f"reading git history failed: {exc}")
            )

        numbers = extract_references(messages, self.repository)
        if self.dry_run:
            for number in numbers:
                typer.echo(f"[dry-run] comment on #{number}: {body}")
            detail = f"dry run: {len(numbers)} comment(s) planned"
            return StageOutcome(self.channel, StageStatus.COMPLETE, detail)

        errors: list[NotificationError] = []
        posted = 0
        try:
            client = self._client()
        except httpx.InvalidURL as exc:
            api_url = self.config.api_url
            return self._failed(NotificationError(f"invalid API URL {api_url}: {exc}"))
        with client:
            for number in numbers:
                if cancel.cancelled:
                    break
                try:
                    self.post_comment(client, number, body)
                except NotificationError as exc:
                    self._warn(exc)
                    errors.append(exc)
                else:
                    posted += 1

        detail = f"{posted} of {len(numbers)} comment(s) posted"
        status = StageStatus.FAILED if errors else StageStatus.COMPLETE
        if cancel.cancelled and posted < len(numbers) and not errors:
            status = StageStatus.CANCELLED
        return StageOutcome(self.channel, status, detail, list(errors))

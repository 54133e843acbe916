"""SHA-256 checksum computation with host-selected backends.

Every computer returns a lowercase hex digest. The checksum file itself is
always rendered by :func:`write_checksum_file`, so its format does not depend
on which tool produced the digest.
"""

from __future__ import annotations

import hashlib
import re
import shutil
import sys
import typing as typ

from plumbum import local

from .cmd_utils import ensure_allowed_executable, run_cmd

if typ.TYPE_CHECKING:
    from pathlib import Path

__all__ = [
    "CertutilChecksum",
    "ChecksumComputer",
    "HashlibChecksum",
    "ShasumChecksum",
    "format_checksum_line",
    "select_checksum_computer",
    "verify_checksum_file",
    "write_checksum_file",
]

_HEX_DIGEST = re.compile(r"^[0-9a-f]{64}$")
_CHUNK_SIZE = 1 << 20


class ChecksumComputer(typ.Protocol):
    """Compute the SHA-256 digest of a file."""

    name: str

    def digest(self, path: Path) -> str:  # pragma: no cover - protocol
        ...


def _normalise_digest(candidate: str, source: str) -> str:
    digest = candidate.strip().lower()
    if not _HEX_DIGEST.fullmatch(digest):
        msg = f"{source} did not produce a SHA-256 digest: {candidate!r}"
        raise ValueError(msg)
    return digest


class HashlibChecksum:
    """Hash the file in-process."""

    name = "hashlib"

    def digest(self, path: Path) -> str:
        hasher = hashlib.sha256()
        with path.open("rb") as handle:
            for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
                hasher.update(chunk)
        return hasher.hexdigest()


class ShasumChecksum:
    """Hash the file with ``shasum -a 256``."""

    name = "shasum"

    def __init__(self, executable: str = "shasum") -> None:
        self.executable = ensure_allowed_executable(
            executable, ("shasum", "shasum.exe")
        )

    def digest(self, path: Path) -> str:
        output = str(run_cmd(local[self.executable]["-a", "256", str(path)]))
        first = output.split(maxsplit=1)[0] if output.strip() else ""
        return _normalise_digest(first, "shasum")


class CertutilChecksum:
    """Hash the file with Windows ``certutil -hashfile``.

    Older ``certutil`` releases print the digest as space-separated byte
    pairs, so spaces are removed before the 64-character token is matched.
    """

    name = "certutil"

    def __init__(self, executable: str = "certutil") -> None:
        self.executable = ensure_allowed_executable(
            executable, ("certutil", "certutil.exe")
        )

    def digest(self, path: Path) -> str:
        output = str(run_cmd(local[self.executable]["-hashfile", str(path), "SHA256"]))
        for line in output.splitlines():
            candidate = line.replace(" ", "").strip().lower()
            if _HEX_DIGEST.fullmatch(candidate):
                return candidate
        msg = f"certutil did not produce a SHA-256 digest for {path}"
        raise ValueError(msg)


def select_checksum_computer() -> ChecksumComputer:
    """Return the best checksum backend available on this host.

    ``shasum`` is preferred when it is on ``PATH``; Windows hosts without it
    fall back to ``certutil``; anything else hashes in-process.
    """
    if shasum := shutil.which("shasum"):
        return ShasumChecksum(shasum)
    if sys.platform == "win32" and (certutil := shutil.which("certutil")):
        return CertutilChecksum(certutil)
    return HashlibChecksum()


def format_checksum_line(digest: str, archive_name: str) -> str:
    """Return the canonical ``<hex>  <file>`` checksum line."""
    return f"{digest}  {archive_name}\n"


def write_checksum_file(
    archive: Path, destination: Path, computer: ChecksumComputer
) -> str:
    """Write the checksum of *archive* to *destination* and return the digest."""
    digest = _normalise_digest(computer.digest(archive), computer.name)
    destination.write_text(format_checksum_line(digest, archive.name), encoding="utf-8")
    return digest


def verify_checksum_file(
    archive: Path, checksum_file: Path, computer: ChecksumComputer | None = None
) -> bool:
    """Return ``True`` when *checksum_file* matches the contents of *archive*.

    The file must hold exactly one line naming *archive* by its file name.
    """
    lines = checksum_file.read_text(encoding="utf-8").splitlines()
    if len(lines) != 1:
        return False
    recorded, _, name = lines[0].partition("  ")
    if name != archive.name or not _HEX_DIGEST.fullmatch(recorded):
        return False
    actual = (computer or HashlibChecksum()).digest(archive)
    return actual.lower() == recorded

"""Archive a built binary and record its checksum."""

from __future__ import annotations

import dataclasses as dc
import logging
import tarfile
import typing as typ
from pathlib import Path

from plumbum.commands.processes import ProcessExecutionError

from .checksums import ChecksumComputer, select_checksum_computer, write_checksum_file
from .errors import PackagingError

if typ.TYPE_CHECKING:
    from .config import ReleaseConfig
    from .matrix import MatrixEntry
    from .tags import ReleaseTag

__all__ = ["Artifact", "Packager"]

logger = logging.getLogger(__name__)


@dc.dataclass(frozen=True, slots=True)
class Artifact:
    """A packaged archive and its checksum file, ready for upload."""

    target: str
    release_name: str
    archive_path: Path
    checksum_path: Path
    digest: str

    @property
    def files(self) -> tuple[Path, Path]:
        """Return the archive and checksum paths in upload order."""
        return self.archive_path, self.checksum_path


class Packager:
    """Produce ``{release_name}.tar.gz`` and ``{release_name}.sha256``.

    Parameters
    ----------
    config : ReleaseConfig
        Release configuration; locates cargo's release output directory.
    tag : ReleaseTag
        Tag embedded in every release name.
    computer : ChecksumComputer, optional
        Checksum backend. Defaults to :func:`select_checksum_computer`.
    """

    def __init__(
        self,
        config: ReleaseConfig,
        tag: ReleaseTag,
        *,
        computer: ChecksumComputer | None = None,
    ) -> None:
        self.config = config
        self.tag = tag
        self.computer = computer or select_checksum_computer()

    def binary_path(self, entry: MatrixEntry) -> Path:
        """Return where cargo leaves the release binary for *entry*."""
        return self.config.release_dir(entry.target) / entry.binary_file_name

    def package(self, entry: MatrixEntry, binary: Path | None = None) -> Artifact:
        """Archive *entry*'s binary and write its checksum file.

        Raises
        ------
        PackagingError
            If the binary is missing or the archive or checksum cannot be
            written.
        """
        binary = Path(binary) if binary is not None else self.binary_path(entry)
        if not binary.is_file():
            raise PackagingError(entry.target, f"binary not found at {binary}")

        release_name = entry.release_name(str(self.tag))
        out_dir = binary.parent
        archive = out_dir / f"{release_name}.tar.gz"
        checksum = out_dir / f"{release_name}.sha256"
        try:
            with tarfile.open(archive, "w:gz") as tar:
                tar.add(binary, arcname=binary.name)
            digest = write_checksum_file(archive, checksum, self.computer)
        except (OSError, tarfile.TarError, ValueError, ProcessExecutionError) as exc:
            raise PackagingError(entry.target, str(exc)) from exc

        logger.info("Packaged %s (sha256 %s)", archive.name, digest)
        return Artifact(
            target=entry.target,
            release_name=release_name,
            archive_path=archive,
            checksum_path=checksum,
            digest=digest,
        )

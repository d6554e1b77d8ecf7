"""Verified in-place replacement of the running autoscope executable."""

from __future__ import annotations

import os
import shutil
import stat
import subprocess
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Tuple

from . import __version__
from .artifacts.catalog import parse_constraint
from .artifacts.fetcher import ArtifactFetcher
from .errors import ArtifactNotFoundError, NoMatchingReleaseError
from .logging import get_logger
from .models import Artifact

logger = get_logger("selfupdate")


@dataclass(frozen=True)
class UpdateOutcome:
    status: str
    current_version: str
    target_version: Optional[str] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status in {"updated", "up-to-date"}


def current_executable() -> Path:
    """Path of the executable that launched this process."""
    launched = Path(sys.argv[0])
    if launched.is_file():
        return launched.resolve()
    found = shutil.which(launched.name or "autoscope")
    if found is None:
        raise FileNotFoundError(f"Cannot locate the running executable ({sys.argv[0]})")
    return Path(found).resolve()


def atomically_replace_executable(target: Path, new_binary: Path) -> Path:
    """Swap ``target`` for ``new_binary`` in one step and return the backup of the old one."""
    if os.name == "nt":
        return _replace_windows(target, new_binary)
    return _replace_posix(target, new_binary)


def restore_executable(target: Path, backup: Path) -> None:
    os.replace(backup, target)


def _replace_posix(target: Path, new_binary: Path) -> Path:
    backup = target.with_name(f".{target.name}.backup")
    shutil.copy2(target, backup)
    mode = target.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", dir=target.parent)
    try:
        with os.fdopen(fd, "wb") as handle, new_binary.open("rb") as source:
            shutil.copyfileobj(source, handle)
        os.chmod(tmp_name, stat.S_IMODE(mode))
        os.replace(tmp_name, target)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        backup.unlink(missing_ok=True)
        raise
    return backup


def _replace_windows(target: Path, new_binary: Path) -> Path:
    # A running .exe cannot be overwritten but can be renamed.
    backup = target.with_name(f"{target.name}.old")
    backup.unlink(missing_ok=True)
    os.replace(target, backup)
    try:
        shutil.copy2(new_binary, target)
    except BaseException:
        os.replace(backup, target)
        raise
    return backup


class SelfUpdater:
    """Checks for, installs and verifies new releases of autoscope itself."""

    def __init__(
        self,
        fetcher: ArtifactFetcher,
        current_version: str = __version__,
        *,
        executable: Optional[Path] = None,
        allow_prerelease: bool = False,
        self_check_timeout: float = 10.0,
        run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        self.fetcher = fetcher
        self.current_version = current_version
        self._executable = executable
        self.allow_prerelease = allow_prerelease
        self.self_check_timeout = self_check_timeout
        self._run = run

    @property
    def executable(self) -> Path:
        if self._executable is None:
            self._executable = current_executable()
        return self._executable

    def check_for_update(self, constraint: Optional[str] = None) -> Optional[Artifact]:
        """Return the newest release above the running version, or None when there is none.

        A newer release that cannot be installed here, for lack of a platform
        asset or a published digest, raises ``ArtifactNotFoundError``.
        """
        clauses = [f">{self.current_version}"]
        pinned = parse_constraint(constraint)
        if pinned is not None:
            clauses.append(str(pinned))
        try:
            artifact = self.fetcher.resolve(
                "self",
                ",".join(clauses),
                allow_prerelease=self.allow_prerelease,
            )
        except NoMatchingReleaseError as exc:
            logger.debug("No update available: %s", exc)
            return None
        except ArtifactNotFoundError as exc:
            logger.warning("A newer autoscope release exists but cannot be installed: %s", exc)
            raise
        logger.info("autoscope %s is available (running %s)", artifact.version, self.current_version)
        return artifact

    async def apply_update(self, artifact: Artifact) -> UpdateOutcome:
        """Install ``artifact`` over the running executable, rolling back if it fails its self-check."""
        installed = await self.fetcher.fetch(artifact, activate=False)
        new_binary = self.fetcher.binary_path(installed)
        target = self.executable

        backup = atomically_replace_executable(target, new_binary)
        passed, detail = self._self_check(target, artifact.version)
        if not passed:
            restore_executable(target, backup)
            logger.error("Update to %s failed its self-check; restored %s", artifact.version, self.current_version)
            return UpdateOutcome(
                status="rolled-back",
                current_version=self.current_version,
                target_version=artifact.version,
                message=detail,
            )

        try:
            backup.unlink(missing_ok=True)
        except PermissionError:
            logger.debug("Backup %s still in use; it will be replaced by the next update", backup)
        self.fetcher.activate("self", artifact.version)
        logger.info("Updated autoscope %s -> %s", self.current_version, artifact.version)
        return UpdateOutcome(
            status="updated",
            current_version=self.current_version,
            target_version=artifact.version,
            message="The new version takes effect on the next invocation.",
        )

    def _self_check(self, target: Path, expected_version: str) -> Tuple[bool, str]:
        try:
            result = self._run(
                [str(target), "--version"],
                capture_output=True,
                text=True,
                timeout=self.self_check_timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            return False, f"{target} --version timed out after {self.self_check_timeout:.0f}s"
        except OSError as exc:
            return False, f"{target} could not be executed: {exc}"
        output = (result.stdout or "").strip()
        if result.returncode != 0:
            return False, f"{target} --version exited with {result.returncode}: {(result.stderr or output).strip()}"
        if expected_version not in output.split():
            return False, f"{target} --version printed '{output}', expected {expected_version}"
        return True, output


__all__ = [
    "SelfUpdater",
    "UpdateOutcome",
    "atomically_replace_executable",
    "current_executable",
    "restore_executable",
]

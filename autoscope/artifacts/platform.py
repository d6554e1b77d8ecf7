"""Host platform detection in release-asset naming (``<os>-<arch>``)."""

from __future__ import annotations

import platform as _platform
import sys
from typing import Optional

_OS_NAMES = {
    "linux": "linux",
    "darwin": "darwin",
    "win32": "windows",
    "cygwin": "windows",
    "freebsd": "freebsd",
    "openbsd": "openbsd",
    "netbsd": "netbsd",
    "dragonfly": "dragonfly",
    "sunos": "illumos",
}

_ARCH_NAMES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "x64": "amd64",
    "i386": "386",
    "i686": "386",
    "x86": "386",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "armv7",
    "armv6l": "armv6",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
    "riscv64": "riscv64",
    "mips64": "mips64",
}


class UnsupportedPlatform(ValueError):
    """The host operating system or CPU has no release assets."""


def normalize_os(name: str) -> str:
    lowered = name.lower()
    for prefix, mapped in _OS_NAMES.items():
        if lowered.startswith(prefix):
            return mapped
    raise UnsupportedPlatform(f"Unsupported operating system: {name}")


def normalize_arch(name: str) -> str:
    try:
        return _ARCH_NAMES[name.lower()]
    except KeyError:
        raise UnsupportedPlatform(f"Unsupported architecture: {name}") from None


def current_platform(override: Optional[str] = None) -> str:
    """Return the platform triple for this host, or ``override`` when given."""
    if override:
        os_name, sep, arch = override.partition("-")
        if not sep or not os_name or not arch:
            raise UnsupportedPlatform(f"Platform must look like '<os>-<arch>', got '{override}'")
        return f"{os_name.lower()}-{arch.lower()}"
    return f"{normalize_os(sys.platform)}-{normalize_arch(_platform.machine())}"


def executable_name(name: str, platform: str) -> str:
    return f"{name}.exe" if platform.startswith("windows-") else name


def archive_suffix(platform: str) -> str:
    return ".zip" if platform.startswith("windows-") else ".tar.gz"


__all__ = [
    "UnsupportedPlatform",
    "archive_suffix",
    "current_platform",
    "executable_name",
    "normalize_arch",
    "normalize_os",
]

"""Error taxonomy shared across autoscope components."""

from __future__ import annotations

from typing import Optional


class AutoscopeError(RuntimeError):
    """Base class for every error raised by autoscope."""


class ConfigError(AutoscopeError):
    """Raised when the configuration file cannot be parsed."""


class ScanError(AutoscopeError):
    """A source file could not be read, decoded or parsed."""

    def __init__(self, file: str, message: str) -> None:
        super().__init__(f"{file}: {message}")
        self.file = file
        self.message = message


class MarkerError(AutoscopeError):
    """A metrics marker was applied to a non-function or had malformed arguments."""

    def __init__(self, file: str, line: int, message: str) -> None:
        super().__init__(f"{file}:{line}: {message}")
        self.file = file
        self.line = line
        self.message = message


class DuplicateNameError(AutoscopeError):
    """Two instrumented functions share the same qualified name within a file."""

    def __init__(self, qualified_name: str, file: str, first_line: int, line: int) -> None:
        super().__init__(
            f"{file}:{line}: '{qualified_name}' already declared at line {first_line}"
        )
        self.qualified_name = qualified_name
        self.file = file
        self.first_line = first_line
        self.line = line


class IntegrityError(AutoscopeError):
    """Downloaded artifact bytes did not match the expected digest."""

    def __init__(self, name: str, expected: str, actual: str) -> None:
        super().__init__(f"Digest mismatch for {name}: expected {expected}, got {actual}")
        self.name = name
        self.expected = expected
        self.actual = actual


class NetworkError(AutoscopeError):
    """Transient network failure; retried before being surfaced."""


class ArtifactNotFoundError(AutoscopeError):
    """No release asset satisfies the requested kind, version and platform."""


class NoMatchingReleaseError(ArtifactNotFoundError):
    """No published release satisfies the version constraint at all."""


class ProcessError(AutoscopeError):
    """The managed engine failed to start or crashed."""

    def __init__(self, message: str, output: Optional[str] = None) -> None:
        detail = f"{message}\n{output}" if output else message
        super().__init__(detail)
        self.output = output or ""


class ProxyUpstreamError(AutoscopeError):
    """The engine could not be reached while forwarding a request."""


class InvalidTransition(AutoscopeError):
    """A lifecycle event is not valid for the current supervisor state."""


__all__ = [
    "AutoscopeError",
    "ArtifactNotFoundError",
    "ConfigError",
    "DuplicateNameError",
    "IntegrityError",
    "InvalidTransition",
    "MarkerError",
    "NoMatchingReleaseError",
    "NetworkError",
    "ProcessError",
    "ProxyUpstreamError",
    "ScanError",
]

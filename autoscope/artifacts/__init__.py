"""Release resolution and verified installation of the engine and of autoscope itself."""

from .catalog import ReleaseCatalog, ReleaseChannel, is_exact_pin, parse_constraint, select_release
from .fetcher import ENGINE_CHANNEL, SELF_CHANNEL, ArtifactFetcher
from .platform import UnsupportedPlatform, current_platform

__all__ = [
    "ArtifactFetcher",
    "ENGINE_CHANNEL",
    "ReleaseCatalog",
    "ReleaseChannel",
    "SELF_CHANNEL",
    "UnsupportedPlatform",
    "current_platform",
    "is_exact_pin",
    "parse_constraint",
    "select_release",
]

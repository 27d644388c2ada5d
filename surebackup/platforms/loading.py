"""Loading of cloud platforms from entry points."""

from collections.abc import Sequence
from importlib.metadata import entry_points
from typing import Any

from surebackup.platforms.manifest import PlatformManifest

ENTRY_POINT_GROUP = "surebackup.platforms"


class PlatformNotFoundError(Exception):
    """Raised when a platform is not installed or its entry point is broken."""


def available_platforms() -> Sequence[str]:
    """Keys of every installed platform."""
    return sorted(entry.name for entry in entry_points(group=ENTRY_POINT_GROUP))


def load_platform_manifest(key: str) -> PlatformManifest[Any]:
    """Load a platform manifest by key.

    Args:
        key: The platform key as registered in pyproject.toml (e.g., "azure")

    Raises:
        PlatformNotFoundError: If no platform manifest is registered under key

    """
    matches = entry_points(group=ENTRY_POINT_GROUP, name=key)
    if not matches:
        raise PlatformNotFoundError(
            f"Platform '{key}' not found. "
            f"Available platforms: {list(available_platforms())}"
        )

    manifest = next(iter(matches)).load()
    if not isinstance(manifest, PlatformManifest):
        raise PlatformNotFoundError(
            f"Entry point '{key}' does not provide a platform manifest"
        )
    return manifest

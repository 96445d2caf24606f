from __future__ import annotations

import semver

from .errors import ConfigurationError
from .settings import settings


def parse_version(version: str) -> semver.Version:
    """Parse a Kubernetes version such as ``v1.29.2`` (the ``v`` is optional)."""
    raw = version[1:] if version.startswith("v") else version
    try:
        return semver.Version.parse(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"failed to parse machine version {version!r}: {e}") from e


def resolve_image(version: semver.Version, custom_image: str = "") -> str:
    """Return the node image for a version unless a custom image is set."""
    if custom_image:
        return custom_image
    return f"{settings.node_image_repository}:v{version}"

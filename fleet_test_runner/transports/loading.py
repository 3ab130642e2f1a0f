"""Loading of transports from entry points."""

from importlib.metadata import entry_points
from typing import Any

from fleet_test_runner.errors import TransportNotFoundError
from fleet_test_runner.transports.manifest import TransportManifest

ENTRY_POINT_GROUP = "fleet_test_runner.transports"


def load_transport_manifest(key: str) -> TransportManifest[Any]:
    """Load a transport manifest by key.

    Args:
        key: The transport key as registered in pyproject.toml
             (e.g., "adb", "scripted")

    Returns:
        The transport manifest instance

    Raises:
        TransportNotFoundError: If no transport with the given key is found

    """
    entries = entry_points(group=ENTRY_POINT_GROUP)

    for entry in entries:
        if entry.name == key:
            manifest: TransportManifest[Any] = entry.load()
            return manifest

    available = [e.name for e in entries]
    raise TransportNotFoundError(
        f"Transport '{key}' not found. Available transports: {available}"
    )

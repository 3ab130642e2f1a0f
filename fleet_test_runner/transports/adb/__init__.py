"""ADB command-line transport."""

from fleet_test_runner.transports.adb.config import AdbTransportConfig
from fleet_test_runner.transports.adb.manifest import adb_manifest
from fleet_test_runner.transports.adb.transport import AdbTransport

__all__ = ["AdbTransport", "AdbTransportConfig", "adb_manifest"]

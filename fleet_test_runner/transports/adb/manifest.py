"""ADB transport manifest."""

from fleet_test_runner.transports.adb.config import AdbTransportConfig
from fleet_test_runner.transports.adb.transport import AdbTransport
from fleet_test_runner.transports.manifest import TransportManifest

adb_manifest = TransportManifest(
    config_cls=AdbTransportConfig,
    transport_factory=AdbTransport.from_config,
)

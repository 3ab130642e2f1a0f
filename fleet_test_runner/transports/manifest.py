"""Transport manifest definition for the plugin system."""

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass

from pydantic import BaseModel

from fleet_test_runner.transports.base import DeviceTransport


@dataclass(frozen=True, kw_only=True)
class TransportManifest[ConfigT: BaseModel]:
    """Manifest describing a transport plugin.

    The manifest contains references to the configuration class and the
    factory that opens a transport bound to a single device serial.
    """

    config_cls: type[ConfigT]
    transport_factory: Callable[
        [ConfigT, str], AbstractAsyncContextManager[DeviceTransport]
    ]

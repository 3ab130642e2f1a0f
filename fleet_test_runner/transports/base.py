"""Abstract base class for device transports."""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from fleet_test_runner.events import EventSink, LogSink
from fleet_test_runner.models.result import DeviceDetails

type TestSize = Literal["small", "medium", "large"]

PROP_MODEL = "ro.product.model"
PROP_MANUFACTURER = "ro.product.manufacturer"
PROP_VERSION = "ro.build.version.release"
PROP_API_LEVEL = "ro.build.version.sdk"
PROP_LANGUAGE = "persist.sys.language"
PROP_REGION = "persist.sys.country"
PROP_LOCALE = "ro.product.locale"
PROP_EMULATOR = "ro.kernel.qemu"
PROP_AVD_NAMES = ("ro.boot.qemu.avd_name", "ro.kernel.qemu.avd_name")


@dataclass(frozen=True, kw_only=True)
class InstrumentationOptions:
    """What to run on the device, and how long it may stay silent."""

    test_package: str
    runner_class: str
    class_name: str | None = None
    method_name: str | None = None
    test_size: TestSize | None = None
    timeout: float | None = None

    def runner_arguments(self) -> Sequence[tuple[str, str]]:
        """Instrumentation arguments selecting the tests to run."""
        arguments: list[tuple[str, str]] = []
        if self.class_name:
            target = self.class_name
            if self.method_name:
                target = f"{target}#{self.method_name}"
            arguments.append(("class", target))
        if self.test_size is not None:
            arguments.append(("size", self.test_size))
        return arguments


class DeviceTransport(ABC):
    """Abstract base for the mechanism that talks to a single device.

    Implementations report failures by raising ``TransportError``, except for
    ``install_package``, which returns the installer's error message.
    """

    serial: str

    @abstractmethod
    async def get_property(self, name: str) -> str | None:
        """Read a system property, returning None when it is unset."""

    @abstractmethod
    async def install_package(self, path: Path) -> str | None:
        """Install (or reinstall) an APK.

        Returns:
            None on success, otherwise the installer's error message

        """

    @abstractmethod
    async def execute_shell_command(self, command: str) -> str:
        """Run a shell command on the device and return its output."""

    @abstractmethod
    async def start_instrumentation(
        self,
        options: InstrumentationOptions,
        event_sink: EventSink,
        log_sink: LogSink,
    ) -> None:
        """Run instrumentation, streaming events and device logs to the sinks.

        Returns once the run has ended. Raises ``TransportTimeout`` when the
        device produces no output within ``options.timeout`` seconds.
        """

    @abstractmethod
    async def pull(self, remote_dir: str, local_dir: Path) -> None:
        """Copy a device directory into ``local_dir``."""

    async def get_device_details(self) -> DeviceDetails:
        """Collect static device information from system properties."""
        language = await self.get_property(PROP_LANGUAGE)
        region = await self.get_property(PROP_REGION)
        if not language and (locale := await self.get_property(PROP_LOCALE)):
            language, _, region = locale.partition("-")

        avd_name = None
        for name in PROP_AVD_NAMES:
            if avd_name := await self.get_property(name):
                break

        api_level = await self.get_property(PROP_API_LEVEL)
        return DeviceDetails(
            model=await self.get_property(PROP_MODEL),
            manufacturer=await self.get_property(PROP_MANUFACTURER),
            version=await self.get_property(PROP_VERSION),
            api_level=int(api_level) if api_level and api_level.isdigit() else None,
            language=language or None,
            region=region or None,
            is_emulator=await self.get_property(PROP_EMULATOR) == "1",
            avd_name=avd_name or None,
        )

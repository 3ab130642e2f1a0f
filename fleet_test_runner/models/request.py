"""Models for execution requests and run configuration files."""

import re
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any, Self

from pydantic import Field, model_validator

from fleet_test_runner.models.base import Model
from fleet_test_runner.transports.base import InstrumentationOptions, TestSize

WORK_DIR = "work"
IMAGE_DIR = "image"
DATA_DIR = "data"

DEFAULT_PERMISSIONS = (
    "android.permission.READ_EXTERNAL_STORAGE",
    "android.permission.WRITE_EXTERNAL_STORAGE",
)

_UNSAFE_SERIAL_CHARACTERS = re.compile(r"[^a-zA-Z0-9.\-]")


def sanitize_serial(serial: str) -> str:
    """Make a device serial safe to use as a path component."""
    return _UNSAFE_SERIAL_CHARACTERS.sub("_", serial)


class ExecutionOptions(Model):
    """What to install and run on every device, and how."""

    app_apk: Path = Field(..., description="Application APK under test")
    test_apk: Path = Field(..., description="Instrumentation APK")
    app_package: str = Field(..., description="Package name of the application")
    test_package: str = Field(..., description="Package name of the instrumentation")
    test_runner: str = Field(
        default="androidx.test.runner.AndroidJUnitRunner",
        description="Instrumentation runner class",
    )
    class_name: str | None = Field(default=None, description="Only run this class")
    method_name: str | None = Field(
        default=None, description="Only run this method (requires class_name)"
    )
    test_size: TestSize | None = Field(default=None, description="Test size filter")
    adb_timeout: float | None = Field(
        default=600.0,
        gt=0,
        description="Seconds the instrumentation may go without output",
    )
    capture_logs: bool = Field(
        default=True, description="Attach device logs to failing tests"
    )
    max_log_entries_per_test: int = Field(default=5000, gt=0)
    pull_app_data: bool = Field(
        default=False, description="Pull app-reported data files after the run"
    )
    create_animated_gifs: bool = Field(
        default=False, description="Combine each test's screenshots into a GIF"
    )
    permissions: tuple[str, ...] = Field(
        default=DEFAULT_PERMISSIONS,
        description="Runtime permissions granted to the application",
    )
    permission_api_level: int = Field(
        default=23, description="Lowest API level that needs explicit grants"
    )
    device_artifact_root: str = Field(
        default="test_data",
        description="Directory under external storage where tests write artifacts",
    )
    transport: str = Field(default="adb", description="Transport key")
    transport_config: Mapping[str, Any] = Field(
        default_factory=dict, description="Configuration for the transport"
    )

    @model_validator(mode="after")
    def _method_requires_class(self) -> Self:
        if self.method_name and not self.class_name:
            raise ValueError("method_name requires class_name")
        return self

    def instrumentation(self) -> InstrumentationOptions:
        return InstrumentationOptions(
            test_package=self.test_package,
            runner_class=self.test_runner,
            class_name=self.class_name,
            method_name=self.method_name,
            test_size=self.test_size,
            timeout=self.adb_timeout,
        )


class ExecutionRequest(Model):
    """Everything a worker needs to run one device."""

    serial: str = Field(..., description="Device serial")
    output_dir: Path = Field(..., description="Root of the local result tree")
    options: ExecutionOptions
    debug: bool = Field(default=False, description="Log at debug level")

    @property
    def work_dir(self) -> Path:
        return self.output_dir / WORK_DIR / sanitize_serial(self.serial)

    @property
    def image_dir(self) -> Path:
        return self.output_dir / IMAGE_DIR / sanitize_serial(self.serial)

    @property
    def data_dir(self) -> Path:
        return self.output_dir / DATA_DIR / sanitize_serial(self.serial)


class RunConfig(Model):
    """A run across several devices, loaded from a YAML file."""

    version: str = Field(..., description="Run config schema version")
    output_dir: Path = Field(..., description="Root of the local result tree")
    devices: Sequence[str] = Field(..., min_length=1, description="Device serials")
    execution: ExecutionOptions
    isolate: bool = Field(
        default=True, description="Run every device in its own worker process"
    )

    def to_requests(self, *, debug: bool = False) -> Sequence[ExecutionRequest]:
        """Create one execution request per device, skipping duplicates."""
        return [
            ExecutionRequest(
                serial=serial,
                output_dir=self.output_dir,
                options=self.execution,
                debug=debug,
            )
            for serial in dict.fromkeys(self.devices)
        ]

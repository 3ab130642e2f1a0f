"""Pulling device-produced artifacts into the local result tree.

Tests write artifacts on the device under
``<external-storage>/<artifact-root>/<kind>/<class>/<method>/``. After the run
each kind is pulled into the work directory, copied to
``<output>/<kind-dir>/<serial>/<class>/<method>/`` and attached to the
matching test result. The device-side directory is removed afterwards so
artifacts do not accumulate across runs.
"""

import asyncio
import logging
import shutil
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from PIL import Image

from fleet_test_runner.errors import ArtifactPullFailure, TransportError
from fleet_test_runner.models.request import ExecutionRequest
from fleet_test_runner.models.result import PerDeviceResultBuilder, TestIdentifier
from fleet_test_runner.transports.base import DeviceTransport

log = logging.getLogger(__name__)

SCREENSHOTS_DIR = "screenshots"
APP_DATA_DIR = "data"
DEFAULT_EXTERNAL_STORAGE = "/sdcard"
SCREENSHOT_SUFFIXES = frozenset({".png", ".jpg", ".jpeg"})
ANIMATION_FRAME_MS = 1000
DIRECTORY_PRESENT = "present"


@dataclass(frozen=True, kw_only=True)
class ArtifactCollector:
    """Collects artifacts for one device run into its result builder."""

    transport: DeviceTransport
    request: ExecutionRequest
    result: PerDeviceResultBuilder

    async def external_storage_dir(self) -> str:
        """Resolve the device's external storage directory."""
        try:
            output = await self.transport.execute_shell_command("echo $EXTERNAL_STORAGE")
        except TransportError as e:
            log.warning(
                "[%s] Cannot resolve external storage, using %s: %s",
                self.request.serial,
                DEFAULT_EXTERNAL_STORAGE,
                e,
            )
            return DEFAULT_EXTERNAL_STORAGE
        return output.strip() or DEFAULT_EXTERNAL_STORAGE

    async def collect_screenshots(self, storage_dir: str) -> None:
        """Pull screenshots and attach them to their tests.

        Raises:
            ArtifactPullFailure: If the screenshots cannot be pulled or copied

        """
        copied = await self._pull(storage_dir, SCREENSHOTS_DIR, self.request.image_dir)
        for test, method_dir in copied:
            builder = self.result.get_test_result_builder(test)
            if builder is None:
                log.error("Unable to find test for screenshots %s", test)
                continue
            screenshots = [
                path
                for path in sorted(method_dir.iterdir())
                if path.suffix.lower() in SCREENSHOT_SUFFIXES
            ]
            for screenshot in screenshots:
                builder.add_screenshot(screenshot)
            if self.request.options.create_animated_gifs and len(screenshots) > 1:
                gif = method_dir.parent / f"{test.method_name}.gif"
                await asyncio.to_thread(create_animated_gif, screenshots, gif)
                builder.set_animated_gif(gif)

    async def collect_app_data(self, storage_dir: str) -> None:
        """Pull app-reported data files and attach them to their tests.

        Raises:
            ArtifactPullFailure: If the data cannot be pulled or copied

        """
        copied = await self._pull(storage_dir, APP_DATA_DIR, self.request.data_dir)
        for test, method_dir in copied:
            builder = self.result.get_test_result_builder(test)
            if builder is None:
                log.error("Unable to find test for app data %s", test)
                continue
            data_files = [path for path in sorted(method_dir.iterdir()) if path.is_file()]
            if not data_files:
                continue
            if len(data_files) > 1:
                log.warning(
                    "[%s] Found %d app data files for %s, using %s",
                    self.request.serial,
                    len(data_files),
                    test,
                    data_files[0].name,
                )
            builder.add_app_data(data_files[0].read_text(errors="replace"))

    async def _pull(
        self, storage_dir: str, kind: str, destination: Path
    ) -> Sequence[tuple[TestIdentifier, Path]]:
        serial = self.request.serial
        remote_dir = f"{storage_dir}/{self.request.options.device_artifact_root}/{kind}"
        staging = self.request.work_dir / kind

        try:
            listing = await self.transport.execute_shell_command(
                directory_exists_command(remote_dir)
            )
            if DIRECTORY_PRESENT not in listing:
                log.debug("[%s] No %s on device at %s", serial, kind, remote_dir)
                return []

            log.debug("[%s] Pulling %s", serial, remote_dir)
            await self.transport.pull(remote_dir, self.request.work_dir)
            copied = await asyncio.to_thread(copy_artifacts, staging, destination)
            await asyncio.to_thread(shutil.rmtree, staging, ignore_errors=True)
            await self.transport.execute_shell_command(f"rm -rf {remote_dir}")
        except (OSError, TransportError) as e:
            raise ArtifactPullFailure(
                f"Unable to collect {kind} from {serial}: {e}"
            ) from e

        log.debug("[%s] Collected %s for %d test(s)", serial, kind, len(copied))
        return copied


def directory_exists_command(remote_dir: str) -> str:
    """Shell command printing ``DIRECTORY_PRESENT`` if ``remote_dir`` exists."""
    return f"if [ -d {remote_dir} ]; then echo {DIRECTORY_PRESENT}; fi"


def copy_artifacts(
    staging: Path, destination: Path
) -> Sequence[tuple[TestIdentifier, Path]]:
    """Copy ``<class>/<method>/`` directories from ``staging`` to ``destination``.

    Returns the copied method directories with the test they belong to.
    """
    if not staging.is_dir():
        return []

    copied: list[tuple[TestIdentifier, Path]] = []
    for class_dir in sorted(staging.iterdir()):
        if not class_dir.is_dir() or class_dir.name.startswith("."):
            continue
        target = destination / class_dir.name
        shutil.copytree(class_dir, target, dirs_exist_ok=True)
        for method_dir in sorted(target.iterdir()):
            if method_dir.is_dir():
                test = TestIdentifier(
                    class_name=class_dir.name, method_name=method_dir.name
                )
                copied.append((test, method_dir))
    return copied


def create_animated_gif(frames: Sequence[Path], output: Path) -> None:
    """Combine screenshots into a looping animated GIF."""
    images = [Image.open(frame) for frame in frames]
    try:
        first, *rest = images
        first.save(
            output,
            save_all=True,
            append_images=rest,
            duration=ANIMATION_FRAME_MS,
            loop=0,
        )
    finally:
        for image in images:
            image.close()

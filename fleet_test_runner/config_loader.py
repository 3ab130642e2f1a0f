"""Loader for run configuration files."""

import asyncio
from pathlib import Path

import yaml
from pydantic import ValidationError

from fleet_test_runner.models.request import RunConfig


async def load_run_config(path: Path) -> RunConfig:
    """Load and validate a run configuration file.

    Relative ``output_dir``, ``app_apk`` and ``test_apk`` paths are resolved
    against the directory holding the file.

    Args:
        path: Path to the YAML run configuration

    Returns:
        Validated run configuration

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file is empty, is not valid YAML or fails validation

    """
    if not await asyncio.to_thread(path.is_file):
        raise FileNotFoundError(f"Run config not found: {path}")

    content = await asyncio.to_thread(path.read_text)

    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        raise ValueError(f"Empty run config: {path}")
    if not isinstance(data, dict):
        raise ValueError(f"Invalid run config schema in {path}: expected a mapping")

    try:
        config = RunConfig.model_validate(data)
    except ValidationError as e:
        raise ValueError(f"Invalid run config schema in {path}: {e}") from e

    return _resolve_paths(config, path.parent)


def _resolve_paths(config: RunConfig, base: Path) -> RunConfig:
    execution = config.execution.model_copy(
        update={
            "app_apk": base / config.execution.app_apk,
            "test_apk": base / config.execution.test_apk,
        }
    )
    return config.model_copy(
        update={"output_dir": base / config.output_dir, "execution": execution}
    )

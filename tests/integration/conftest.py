"""Fixtures for integration tests running real worker processes."""

from collections.abc import Callable
from pathlib import Path

import pytest

from fleet_test_runner.models.request import ExecutionRequest
from fleet_test_runner.testing.factories import ExecutionOptionsFactory
from fleet_test_runner.testing.transport import ScriptedStep, ScriptedTransportConfig


@pytest.fixture
def output_dir(tmp_path: Path) -> Path:
    """Root of the local result tree."""
    return tmp_path / "results"


@pytest.fixture
def scripted_request(
    output_dir: Path,
) -> Callable[[str, list[ScriptedStep]], ExecutionRequest]:
    """Return a function building requests for the scripted transport."""

    def _make(serial: str, steps: list[ScriptedStep]) -> ExecutionRequest:
        config = ScriptedTransportConfig(steps=steps)
        return ExecutionRequest(
            serial=serial,
            output_dir=output_dir,
            options=ExecutionOptionsFactory.build(
                app_package="com.example.app",
                test_package="com.example.app.test",
                transport="scripted",
                transport_config=config.model_dump(mode="json"),
            ),
        )

    return _make


@pytest.fixture
def passing_run() -> list[ScriptedStep]:
    """Steps of a run with two passing tests."""
    return [
        ScriptedStep(kind="run-started", count=2),
        ScriptedStep(kind="test-started", test="com.example.LoginTest#testA"),
        ScriptedStep(kind="test-ended", test="com.example.LoginTest#testA"),
        ScriptedStep(kind="test-started", test="com.example.LoginTest#testB"),
        ScriptedStep(kind="test-ended", test="com.example.LoginTest#testB"),
        ScriptedStep(kind="run-ended", count=2000),
    ]

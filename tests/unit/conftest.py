"""Shared fixtures for unit tests."""

from collections.abc import Callable
from pathlib import Path

import pytest

from fleet_test_runner.models.request import ExecutionRequest
from fleet_test_runner.models.result import TestIdentifier
from fleet_test_runner.testing.clock import FakeClock
from fleet_test_runner.testing.factories import (
    ExecutionOptionsFactory,
    ExecutionRequestFactory,
)


@pytest.fixture
def clock() -> FakeClock:
    """Create a fake clock."""
    return FakeClock()


@pytest.fixture
def first_test() -> TestIdentifier:
    """First test of the sample suite."""
    return TestIdentifier(class_name="com.example.LoginTest", method_name="testA")


@pytest.fixture
def second_test() -> TestIdentifier:
    """Second test of the sample suite."""
    return TestIdentifier(class_name="com.example.LoginTest", method_name="testB")


type RequestFn = Callable[..., ExecutionRequest]


@pytest.fixture
def make_request(tmp_path: Path) -> RequestFn:
    """Return a function building an execution request for the scripted transport."""

    def _make(serial: str = "emulator-5554", **options: object) -> ExecutionRequest:
        return ExecutionRequestFactory.build(
            serial=serial,
            output_dir=tmp_path / "out",
            options=ExecutionOptionsFactory.build(
                app_package="com.example.app",
                test_package="com.example.app.test",
                **options,
            ),
        )

    return _make

"""Error taxonomy for device runs."""


class FleetTestRunnerError(Exception):
    """Base class for all errors raised by the runner."""


class DeviceRunError(FleetTestRunnerError):
    """A condition that is recorded on a device's result instead of raised."""


class InstallFailure(DeviceRunError):
    """Raised when the application or instrumentation APK cannot be installed."""


class PermissionGrantFailure(DeviceRunError):
    """Raised when runtime permissions cannot be granted to the application."""


class InstrumentationFailure(DeviceRunError):
    """Raised when the instrumentation run itself fails or reports a failure."""


class LogCorrelationFailure(DeviceRunError):
    """Raised when captured device logs cannot be merged into test results."""


class ArtifactPullFailure(DeviceRunError):
    """Raised when device artifacts cannot be pulled or laid out locally."""


class InvalidTransition(FleetTestRunnerError):
    """Raised when a result builder is asked to move backwards or repeat a step."""


class MalformedAppData(FleetTestRunnerError):
    """Raised when app-reported data cannot be parsed."""


class WorkerProcessFailure(FleetTestRunnerError):
    """Raised when a worker process exits abnormally or leaves no usable result."""


class TransportError(FleetTestRunnerError):
    """Raised when the device transport reports a failure."""


class TransportTimeout(TransportError):
    """Raised when a device transport call produces no output within its timeout."""


class TransportNotFoundError(FleetTestRunnerError):
    """Raised when a transport is not found."""

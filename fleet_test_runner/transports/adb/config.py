"""Configuration for the ADB transport."""

from pydantic import BaseModel, Field


class AdbTransportConfig(BaseModel):
    """Configuration for the ADB transport."""

    adb_path: str = Field(default="adb", description="Path to the adb executable")
    command_timeout: float = Field(
        default=600.0,
        gt=0,
        description="Seconds an install, shell or pull command may take",
    )
    clear_logcat: bool = Field(
        default=True, description="Clear the device log before instrumentation"
    )

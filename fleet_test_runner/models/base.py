"""Base model configuration for all data structures."""

from pydantic import BaseModel, ConfigDict


class Model(BaseModel):
    """Base model: frozen, and rejects unknown keys."""

    model_config = ConfigDict(frozen=True, extra="forbid")

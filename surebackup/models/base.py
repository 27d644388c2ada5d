"""Base model for the engine's immutable records."""

from pydantic import BaseModel, ConfigDict


class Model(BaseModel):
    """Immutable record validated on construction.

    Names coming from the catalog or the command line are stripped of
    surrounding whitespace; unknown fields are rejected.
    """

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True, extra="forbid")

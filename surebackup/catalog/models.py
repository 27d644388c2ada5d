"""Pydantic models for backup catalog API responses."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

TERMINAL_SESSION_STATES: frozenset[str] = frozenset(["Stopped", "Completed", "Failed"])


class CatalogModel(BaseModel):
    """Response model tolerant of extra fields."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class TokenResponse(CatalogModel):
    """Response from the token endpoint."""

    access_token: str
    token_type: str = "bearer"
    refresh_token: str | None = None
    expires_in: int | None = None


class Pagination(CatalogModel):
    """Pagination block of a collection response."""

    total: int
    count: int
    skip: int = 0
    limit: int | None = None


class Job(CatalogModel):
    """A backup job."""

    id: str
    name: str
    type: str
    is_disabled: bool = Field(default=False, alias="isDisabled")
    description: str | None = None


class Backup(CatalogModel):
    """A backup chain produced by a job."""

    id: str
    name: str
    job_id: str | None = Field(default=None, alias="jobId")
    platform_name: str | None = Field(default=None, alias="platformName")
    policy_tag: str | None = Field(default=None, alias="policyTag")


class RestorePointRecord(CatalogModel):
    """A restore point as listed by the catalog."""

    id: str
    name: str
    creation_time: datetime = Field(alias="creationTime")
    backup_id: str | None = Field(default=None, alias="backupId")
    platform_name: str | None = Field(default=None, alias="platformName")


class SessionResult(CatalogModel):
    """Outcome block of a session."""

    result: str = "None"
    message: str | None = None
    is_canceled: bool = Field(default=False, alias="isCanceled")


class RestoreSession(CatalogModel):
    """A restore session started by the catalog."""

    id: str
    name: str | None = None
    state: str
    result: SessionResult | None = None
    creation_time: datetime | None = Field(default=None, alias="creationTime")
    end_time: datetime | None = Field(default=None, alias="endTime")

    @property
    def is_terminal(self) -> bool:
        """Whether the session has stopped running."""
        return self.state in TERMINAL_SESSION_STATES

    @property
    def is_failed(self) -> bool:
        """Whether the session ended unsuccessfully."""
        if self.state == "Failed":
            return True
        return self.result is not None and (
            self.result.result == "Failed" or self.result.is_canceled
        )

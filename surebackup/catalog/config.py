"""Configuration for the backup catalog client."""

from pydantic import BaseModel, Field, SecretStr


class CatalogConfig(BaseModel):
    """Connection settings for the backup management REST API."""

    server: str
    username: str
    password: SecretStr
    port: int = 9419
    scheme: str = "https"
    api_version: str = "1.1-rev2"
    # Backup servers commonly present self-signed certificates.
    verify_tls: bool = False
    request_timeout: float = Field(default=60, gt=0)
    max_retries: int = Field(default=3, ge=0)
    backoff_cap: float = Field(default=30, ge=0)
    page_size: int = Field(default=200, gt=0)

    @property
    def base_url(self) -> str:
        """Root URL of the REST API."""
        return f"{self.scheme}://{self.server}:{self.port}"

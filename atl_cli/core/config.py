"""
Credential configuration for the Atlassian REST APIs.

Values come from the process environment first, then from a ``.env`` file.
The config is built once by the caller and passed down; nothing is cached
at module level.
"""

import base64
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import dotenv_values

from atl_cli.core.client import ConfigurationError

ENV_DOMAIN = "ATLASSIAN_DOMAIN"
ENV_EMAIL = "ATLASSIAN_EMAIL"
ENV_TOKEN = "ATLASSIAN_API_TOKEN"


@dataclass(frozen=True)
class AtlassianConfig:
    """Target site and account used to authenticate every request."""

    domain: str = ""
    email: str = ""
    token: str = ""

    @property
    def auth(self) -> str:
        """Precomputed Basic auth token (base64 of ``email:token``)."""
        return base64.b64encode(f"{self.email}:{self.token}".encode()).decode("ascii")

    @property
    def base_url(self) -> str:
        domain = self.domain.strip().rstrip("/")
        if domain.startswith("http"):
            return domain
        return f"https://{domain}"

    def validate(self) -> "AtlassianConfig":
        """Raise ConfigurationError if anything needed to call the API is missing."""
        if not self.domain:
            raise ConfigurationError(f"{ENV_DOMAIN} not set. Configure in .env or environment.")
        missing = [name for name, value in ((ENV_EMAIL, self.email), (ENV_TOKEN, self.token)) if not value]
        if missing:
            raise ConfigurationError(f"{' and '.join(missing)} not set.", details={"missing": missing})
        return self

    @classmethod
    def load(cls, env_file: str | Path | None = None) -> "AtlassianConfig":
        """
        Load configuration from the environment and a .env file.

        Args:
            env_file: Path to a .env file (default: .env in the working directory)

        Returns:
            An unvalidated config; call validate() before use.

        """
        path = Path(env_file) if env_file else Path.cwd() / ".env"
        file_values = dotenv_values(path) if path.is_file() else {}

        def get(key: str) -> str:
            return os.environ.get(key) or file_values.get(key) or ""

        return cls(domain=get(ENV_DOMAIN), email=get(ENV_EMAIL), token=get(ENV_TOKEN))

"""Action configuration using pydantic-settings.

This module defines the settings read from the environment of a GitHub
Actions step:

- ActionSettings: the action inputs, exposed by the runner as INPUT_*
  environment variables (e.g., INPUT_FLEET, INPUT_BALENA_TOKEN).
- WorkflowSettings: the workflow context, exposed as GITHUB_* variables
  (event name, ref, sha, event payload path, outputs file).

GitHub passes inputs that were not set as empty strings; empty variables
are ignored and the field defaults apply.
"""

from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from deploy_to_balena.errors import ConfigurationError


class ActionSettings(BaseSettings):
    """Deploy action inputs from environment variables.

    All environment variables are prefixed with INPUT_ (e.g., INPUT_FLEET).

    Required fields:
    - balena_token: API token used by both the balena CLI and API client
    - fleet: Fleet slug in format "{org}/{fleet}"
    """

    model_config = SettingsConfigDict(
        env_prefix="INPUT_",
        case_sensitive=False,
        env_ignore_empty=True,
    )

    # -------------------------------------------------------------------------
    # balena Configuration
    # -------------------------------------------------------------------------
    balena_token: str

    fleet: str

    # Domain of the balena environment; the API lives at https://api.{environment}/
    environment: str = "balena-cloud.com"

    # Path of the source directory handed to `balena push`
    source: str = "."

    balena_cli_path: str = "balena"

    build_timeout_seconds: int = 7200

    # -------------------------------------------------------------------------
    # GitHub Configuration
    # -------------------------------------------------------------------------
    # Required when versionbot, create_tag or the check_run store is enabled
    github_token: Optional[str] = None

    # Falls back to the repository's master/default branch from the payload
    default_branch: Optional[str] = None

    # -------------------------------------------------------------------------
    # Behaviour flags
    # -------------------------------------------------------------------------
    # Reuse a previously built release for the same commit/pull request
    cache: bool = True

    # Build from the versionbot/pr/{number} branch on pull requests
    versionbot: bool = False

    # Create a git tag named after the version of final releases
    create_tag: bool = False

    # False passes --nocache to the builders
    layer_cache: bool = True

    multi_dockerignore: bool = False

    # -------------------------------------------------------------------------
    # Release store
    # -------------------------------------------------------------------------
    release_store: Literal["tags", "check_run"] = "tags"

    # Pick the newest of several matching releases instead of failing
    reuse_most_recent: bool = False

    # -------------------------------------------------------------------------
    # Versionbot branch waiting
    # -------------------------------------------------------------------------
    versionbot_check_marker: str = "versionbot"

    versionbot_poll_interval: float = 4.0

    versionbot_max_attempts: int = 150

    versionbot_timeout_seconds: float = 900.0

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------
    metrics_pushgateway_url: Optional[str] = None

    log_level: str = "INFO"

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("balena_token")
    @classmethod
    def validate_balena_token(cls, v: str) -> str:
        """Validate that the balena token is not empty."""
        if not v or not v.strip():
            raise ValueError("balena_token cannot be empty")
        return v.strip()

    @field_validator("fleet")
    @classmethod
    def validate_fleet(cls, v: str) -> str:
        """Validate that the fleet is an "{org}/{fleet}" slug."""
        v = v.strip()
        org, sep, name = v.partition("/")
        if not sep or not org or not name or "/" in name:
            raise ValueError("fleet must be in format {org}/{fleet}")
        return v

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate that the environment is a bare domain."""
        v = v.strip()
        if v.startswith(("http://", "https://")) or "/" in v:
            raise ValueError("environment must be a domain such as balena-cloud.com")
        return v

    @field_validator("build_timeout_seconds", "versionbot_max_attempts")
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        """Validate that counters and timeouts are positive."""
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("versionbot_poll_interval", "versionbot_timeout_seconds")
    @classmethod
    def validate_positive_float(cls, v: float) -> float:
        """Validate that intervals are positive."""
        if v <= 0:
            raise ValueError("value must be greater than 0")
        return v

    @field_validator("metrics_pushgateway_url")
    @classmethod
    def validate_pushgateway_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate that the Pushgateway URL has an http(s) scheme."""
        if v is not None and not v.startswith(("http://", "https://")):
            raise ValueError(
                "metrics_pushgateway_url must start with http:// or https://"
            )
        return v

    @property
    def balena_api_url(self) -> str:
        """Base URL of the balena API for the configured environment."""
        return f"https://api.{self.environment}/"

    @property
    def needs_github(self) -> bool:
        """Whether any enabled feature talks to the GitHub API."""
        return self.versionbot or self.create_tag or self.release_store == "check_run"


class WorkflowSettings(BaseSettings):
    """GitHub Actions workflow context from GITHUB_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="GITHUB_",
        case_sensitive=False,
        env_ignore_empty=True,
    )

    event_name: str = ""

    event_path: Optional[str] = None

    ref: str = ""

    sha: str = ""

    # File the step writes name=value outputs to
    output: Optional[str] = None

    job: str = ""

    workspace: Optional[str] = None

    api_url: str = "https://api.github.com"

    actions: bool = False


def get_settings() -> ActionSettings:
    """Create and validate ActionSettings from the environment.

    Returns:
        ActionSettings: Configured settings instance.

    Raises:
        pydantic.ValidationError: If required inputs are missing or invalid.
        ConfigurationError: If an enabled feature lacks the GitHub token.
    """
    settings = ActionSettings()
    if settings.needs_github and not settings.github_token:
        raise ConfigurationError(
            "github_token is required when versionbot, create_tag or the "
            "check_run release store is enabled"
        )
    return settings


def get_workflow_settings() -> WorkflowSettings:
    """Create WorkflowSettings from the environment."""
    return WorkflowSettings()

"""Configuration management for GitLab PM analytics."""

import tomllib
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

import tomli_w


@dataclass
class Config:
    """Configuration for the GitLab connection and snapshot source."""

    gitlab_url: str
    token: str
    project_id: str
    group_id: str | None = None
    snapshot_path: str | None = None

    def validate(self) -> list[str]:
        """Validate configuration values. Returns list of error messages."""
        errors: list[str] = []

        if not self.project_id:
            errors.append("GitLab project id is required")

        if self.gitlab_url:
            parsed = urlparse(self.gitlab_url)
            if parsed.scheme not in ("http", "https"):
                errors.append("GitLab URL must start with http:// or https://")
            if not parsed.netloc:
                errors.append("GitLab URL must include a domain")
        elif not self.snapshot_path:
            errors.append("GitLab URL is required unless a snapshot path is set")

        if not self.token and not self.snapshot_path:
            errors.append("GitLab access token is required unless a snapshot path is set")

        return errors


def get_config_dir() -> Path:
    """Get the configuration directory path."""
    return Path.home() / ".gitlab-pm"


def get_config_path() -> Path:
    """Get the configuration file path."""
    return get_config_dir() / "config.toml"


def get_store_path() -> Path:
    """Get the key/value store file path."""
    return get_config_dir() / "store.toml"


def config_exists() -> bool:
    """Check if configuration file exists."""
    return get_config_path().exists()


def load_config() -> Config:
    """Load configuration from TOML file.

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config is invalid
    """
    config_path = get_config_path()

    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration not found at {config_path}. "
            "Create ~/.gitlab-pm/config.toml to set up."
        )

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    gitlab_section = data.get("gitlab", {})
    snapshot_section = data.get("snapshot", {})

    config = Config(
        gitlab_url=gitlab_section.get("url", ""),
        token=gitlab_section.get("token", ""),
        project_id=str(gitlab_section.get("project_id", "")),
        group_id=str(gitlab_section["group_id"]) if gitlab_section.get("group_id") else None,
        snapshot_path=snapshot_section.get("path"),
    )

    errors = config.validate()
    if errors:
        raise ValueError(f"Invalid configuration: {'; '.join(errors)}")

    return config


def save_config(config: Config) -> None:
    """Save configuration to TOML file."""
    config_dir = get_config_dir()
    config_dir.mkdir(parents=True, exist_ok=True)

    gitlab_data: dict[str, str] = {
        "url": config.gitlab_url,
        "token": config.token,
        "project_id": config.project_id,
    }
    if config.group_id:
        gitlab_data["group_id"] = config.group_id

    data: dict = {"gitlab": gitlab_data}
    if config.snapshot_path:
        data["snapshot"] = {"path": config.snapshot_path}

    with open(get_config_path(), "wb") as f:
        tomli_w.dump(data, f)

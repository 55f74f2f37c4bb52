"""Exception hierarchy for GitLab PM analytics."""


class PMError(Exception):
    """Base exception for analytics errors."""

    pass


class ConfigNotFoundError(PMError):
    """Configuration file not found."""

    pass


class InvalidConfigError(PMError):
    """Configuration is invalid.

    ``errors`` holds the failing predicates, one message each.
    """

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__(f"Invalid configuration: {'; '.join(self.errors)}")


class SnapshotError(PMError):
    """Tracker snapshot could not be read."""

    pass


class BackupError(PMError):
    """Backup document is unreadable or cannot be restored."""

    pass


class EmailParseError(PMError):
    """Email file could not be parsed."""

    pass


class GitLabAuthError(PMError):
    """GitLab authentication failed."""

    pass


class GitLabConnectionError(PMError):
    """Cannot connect to GitLab server."""

    pass


class GitLabRateLimitError(PMError):
    """GitLab rate limit exceeded."""

    pass

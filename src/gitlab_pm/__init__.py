"""GitLab project-tracking analytics."""

__version__ = "0.1.0"

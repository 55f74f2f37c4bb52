"""GitLab REST API client with retry logic."""

import logging
from urllib.parse import quote

import requests
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from gitlab_pm.config import Config

logger = logging.getLogger(__name__)

PER_PAGE = 100
TIMEOUT_SECONDS = 15


class RateLimitError(Exception):
    """Raised when GitLab API rate limit is hit."""

    pass


class AuthenticationError(Exception):
    """Raised when GitLab authentication fails."""

    pass


class ConnectionError(Exception):
    """Raised when GitLab server cannot be reached."""

    pass


class GitLabClient:
    """Client for the GitLab REST API (v4)."""

    def __init__(self, config: Config, session: requests.Session | None = None) -> None:
        """Initialize GitLab client with configuration."""
        self.config = config
        self._session = session

    def _get_session(self) -> requests.Session:
        """Get or create the HTTP session."""
        if self._session is None:
            self._session = requests.Session()
        self._session.headers["PRIVATE-TOKEN"] = self.config.token
        return self._session

    def _url(self, path: str) -> str:
        return f"{self.config.gitlab_url.rstrip('/')}/api/v4/{path.lstrip('/')}"

    @retry(
        retry=retry_if_exception_type(RateLimitError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=60),
        reraise=True,
    )
    def _get(self, path: str, params: dict | None = None) -> requests.Response:
        """Issue one GET request.

        Raises:
            RateLimitError: If rate limited (will be retried)
            AuthenticationError: If authentication fails
            ConnectionError: If the server cannot be reached
            requests.HTTPError: For other API errors
        """
        session = self._get_session()
        try:
            response = session.get(self._url(path), params=params, timeout=TIMEOUT_SECONDS)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise ConnectionError(
                f"Cannot connect to GitLab server at {self.config.gitlab_url}. "
                "Check the URL and your network connection."
            ) from e

        if response.status_code == 429:
            raise RateLimitError("Rate limited by GitLab. Retrying with exponential backoff...")
        if response.status_code == 401:
            raise AuthenticationError("Authentication failed. Check your access token.")
        response.raise_for_status()
        return response

    def _paginate(self, path: str, params: dict | None = None) -> list[dict]:
        """Collect every page of a list endpoint by following ``X-Next-Page``."""
        items: list[dict] = []
        page = "1"
        while page:
            response = self._get(path, {**(params or {}), "per_page": PER_PAGE, "page": page})
            items.extend(response.json())
            page = response.headers.get("X-Next-Page", "").strip()
        logger.debug("Fetched %d items from %s", len(items), path)
        return items

    def _project_path(self) -> str:
        return f"projects/{quote(str(self.config.project_id), safe='')}"

    def _group_path(self) -> str:
        return f"groups/{quote(str(self.config.group_id), safe='')}"

    def list_issues(self) -> list[dict]:
        return self._paginate(f"{self._project_path()}/issues", {"scope": "all", "state": "all"})

    def list_milestones(self) -> list[dict]:
        return self._paginate(f"{self._project_path()}/milestones")

    def list_iterations(self) -> list[dict]:
        if self.config.group_id:
            return self._paginate(f"{self._group_path()}/iterations")
        return self._paginate(f"{self._project_path()}/iterations")

    def list_epics(self) -> list[dict]:
        """Group epics; empty when no group is configured."""
        if not self.config.group_id:
            return []
        return self._paginate(f"{self._group_path()}/epics")

    def fetch_snapshot_data(self) -> dict:
        """Fetch everything needed for a snapshot as raw REST JSON."""
        return {
            "project_id": self.config.project_id,
            "issues": self.list_issues(),
            "epics": self.list_epics(),
            "milestones": self.list_milestones(),
            "iterations": self.list_iterations(),
        }

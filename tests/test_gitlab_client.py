"""Tests for the GitLab REST client and live snapshot fetching."""

from unittest.mock import MagicMock, patch

import pytest
import requests
from tenacity import wait_none

from gitlab_pm import gitlab_client
from gitlab_pm.config import Config
from gitlab_pm.engine import fetch_snapshot
from gitlab_pm.exceptions import GitLabAuthError, GitLabConnectionError, GitLabRateLimitError, SnapshotError
from gitlab_pm.gitlab_client import AuthenticationError, GitLabClient, RateLimitError

CONFIG = Config(gitlab_url="https://gitlab.example.com/", token="glpat-secret", project_id="group/project")


def _make_response(status_code=200, items=None, next_page=""):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = items or []
    response.headers = {"X-Next-Page": next_page}
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error")
    return response


class TestGitLabClient:
    """Tests for GitLabClient."""

    def setup_method(self):
        self.session = MagicMock()
        self.session.headers = {}
        self.client = GitLabClient(CONFIG, session=self.session)

    def test_sets_token_header_and_url(self):
        self.session.get.return_value = _make_response(items=[{"id": 1}])
        assert self.client.list_milestones() == [{"id": 1}]
        assert self.session.headers["PRIVATE-TOKEN"] == "glpat-secret"
        url = self.session.get.call_args.args[0]
        assert url == "https://gitlab.example.com/api/v4/projects/group%2Fproject/milestones"

    def test_follows_pagination(self):
        self.session.get.side_effect = [
            _make_response(items=[{"id": 1}, {"id": 2}], next_page="2"),
            _make_response(items=[{"id": 3}]),
        ]
        assert [i["id"] for i in self.client.list_issues()] == [1, 2, 3]
        pages = [c.kwargs["params"]["page"] for c in self.session.get.call_args_list]
        assert pages == ["1", "2"]
        params = self.session.get.call_args_list[0].kwargs["params"]
        assert params["scope"] == "all"
        assert params["state"] == "all"
        assert params["per_page"] == 100

    def test_epics_need_group(self):
        assert self.client.list_epics() == []
        self.session.get.assert_not_called()

    def test_group_iterations(self):
        client = GitLabClient(
            Config(gitlab_url="https://gitlab.example.com", token="t", project_id="1", group_id="7"),
            session=self.session,
        )
        self.session.get.return_value = _make_response()
        client.list_iterations()
        assert self.session.get.call_args.args[0].endswith("/api/v4/groups/7/iterations")

    def test_authentication_error(self):
        self.session.get.return_value = _make_response(status_code=401)
        with pytest.raises(AuthenticationError):
            self.client.list_issues()

    def test_rate_limit_retries_then_succeeds(self):
        self.session.get.side_effect = [
            _make_response(status_code=429),
            _make_response(items=[{"id": 1}]),
        ]
        with patch.object(GitLabClient._get.retry, "wait", wait_none()):
            assert self.client.list_milestones() == [{"id": 1}]
        assert self.session.get.call_count == 2

    def test_rate_limit_gives_up(self):
        self.session.get.return_value = _make_response(status_code=429)
        with patch.object(GitLabClient._get.retry, "wait", wait_none()):
            with pytest.raises(RateLimitError):
                self.client.list_milestones()
        assert self.session.get.call_count == 3

    def test_connection_error(self):
        self.session.get.side_effect = requests.ConnectionError("refused")
        with pytest.raises(gitlab_client.ConnectionError, match="Cannot connect"):
            self.client.list_issues()

    def test_other_http_errors_propagate(self):
        self.session.get.return_value = _make_response(status_code=404)
        with pytest.raises(requests.HTTPError):
            self.client.list_issues()

    def test_fetch_snapshot_data(self):
        self.session.get.return_value = _make_response()
        data = self.client.fetch_snapshot_data()
        assert set(data) == {"project_id", "issues", "epics", "milestones", "iterations"}


class TestFetchSnapshot:
    """Tests for fetch_snapshot error translation."""

    @patch("gitlab_pm.engine.gitlab_client.GitLabClient")
    def test_builds_snapshot(self, mock_client_cls):
        mock_client_cls.return_value.fetch_snapshot_data.return_value = {
            "issues": [{"id": 1, "iid": 1, "title": "A", "state": "opened"}],
        }
        snapshot = fetch_snapshot(CONFIG)
        assert snapshot.project_id == "group/project"
        assert len(snapshot.issues) == 1

    @pytest.mark.parametrize("raised, expected", [
        (gitlab_client.AuthenticationError("bad token"), GitLabAuthError),
        (gitlab_client.ConnectionError("down"), GitLabConnectionError),
        (gitlab_client.RateLimitError("slow down"), GitLabRateLimitError),
        (requests.HTTPError("500"), SnapshotError),
    ])
    @patch("gitlab_pm.engine.gitlab_client.GitLabClient")
    def test_translates_errors(self, mock_client_cls, raised, expected):
        mock_client_cls.return_value.fetch_snapshot_data.side_effect = raised
        with pytest.raises(expected):
            fetch_snapshot(CONFIG)

    def test_reads_snapshot_file(self, tmp_path):
        path = tmp_path / "snap.json"
        path.write_text('{"project_id": "9", "issues": []}')
        config = Config(gitlab_url="", token="", project_id="9", snapshot_path=str(path))
        assert fetch_snapshot(config).project_id == "9"

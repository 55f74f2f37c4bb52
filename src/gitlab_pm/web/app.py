"""Flask application factory for the GitLab PM analytics API."""

from flask import Flask

from gitlab_pm.models import Snapshot
from gitlab_pm.store import KeyValueStore


def create_app(store: KeyValueStore | None = None, snapshot: Snapshot | None = None) -> Flask:
    """Create and configure the Flask application.

    Args:
        store: Key/value store; defaults to ``~/.gitlab-pm/store.toml``
        snapshot: Snapshot to serve instead of reading the configured source
    """
    app = Flask(__name__)

    app.config["SECRET_KEY"] = "gitlab-pm-local-dev"
    app.config["PM_STORE"] = store
    app.config["PM_SNAPSHOT"] = snapshot

    from gitlab_pm.web.routes import bp
    app.register_blueprint(bp)

    return app

"""HTTP route handlers for the GitLab PM analytics API."""

import logging
import tempfile
from dataclasses import asdict
from datetime import timedelta
from pathlib import Path

from flask import Blueprint, Response, current_app, jsonify, request

from gitlab_pm.absences import absences_to_csv
from gitlab_pm.backup import create_backup, restore_backup, validate_backup
from gitlab_pm.communications import communication_timeline
from gitlab_pm.config import config_exists, get_store_path, load_config, save_config
from gitlab_pm.dates import utcnow
from gitlab_pm.email_import import parse_eml, parse_msg, to_communication_record
from gitlab_pm.engine import AnalyticsEngine, analysis_to_dict, fetch_snapshot, to_jsonable
from gitlab_pm.exceptions import (
    BackupError,
    ConfigNotFoundError,
    EmailParseError,
    GitLabAuthError,
    GitLabConnectionError,
    GitLabRateLimitError,
    InvalidConfigError,
    PMError,
    SnapshotError,
)
from gitlab_pm.export import (
    epics_to_csv,
    initiatives_to_csv,
    issues_to_csv,
    milestones_to_csv,
    risks_to_csv,
    summary_document_to_csv,
    velocity_to_csv,
)
from gitlab_pm.milestones import upcoming
from gitlab_pm.rag import rag_analysis_to_dict
from gitlab_pm.roadmap import group_initiatives
from gitlab_pm.search import IssueFilter, filter_issues, filter_options, search_epics, search_issues, search_milestones
from gitlab_pm.settings import config_from_dict, config_to_dict
from gitlab_pm.snapshot import build_snapshot, issue_to_dict
from gitlab_pm.store import KeyValueStore

logger = logging.getLogger(__name__)

bp = Blueprint("main", __name__)

EXTENSION_KEY = "gitlab_pm"


def _load_connection():
    try:
        return load_config()
    except FileNotFoundError as e:
        raise ConfigNotFoundError(str(e)) from e
    except ValueError as e:
        raise InvalidConfigError(str(e).removeprefix("Invalid configuration: ").split("; ")) from e


def _settings_engine() -> AnalyticsEngine:
    """The app's engine, without loading a snapshot."""
    engine = current_app.extensions.get(EXTENSION_KEY)
    if engine is None:
        store = current_app.config.get("PM_STORE") or KeyValueStore(get_store_path())
        engine = AnalyticsEngine(store)
        current_app.extensions[EXTENSION_KEY] = engine
    return engine


def _engine() -> AnalyticsEngine:
    """The app's engine, loading the snapshot on first use."""
    engine = _settings_engine()
    if not engine.has_snapshot:
        snapshot = current_app.config.get("PM_SNAPSHOT")
        if snapshot is None:
            snapshot = fetch_snapshot(_load_connection())
        engine.load_snapshot(snapshot)
    return engine


@bp.errorhandler(PMError)
def handle_error(e: PMError):
    """Map analytics errors to HTTP status codes."""
    if isinstance(e, (ConfigNotFoundError, InvalidConfigError)):
        status = 503
    elif isinstance(e, GitLabAuthError):
        status = 401
    elif isinstance(e, GitLabRateLimitError):
        status = 429
    elif isinstance(e, (GitLabConnectionError, SnapshotError)):
        status = 503
    elif isinstance(e, (BackupError, EmailParseError)):
        status = 400
    else:
        status = 500
    if status == 500:
        logger.error("Request failed: %s", e)
    return jsonify({"error": str(e)}), status


@bp.route("/health")
def health():
    """Health check endpoint."""
    config_loaded = config_exists() or current_app.config.get("PM_SNAPSHOT") is not None
    if config_loaded:
        return jsonify({"status": "ok", "config_loaded": True})
    else:
        return jsonify({
            "status": "error",
            "config_loaded": False,
            "message": "Configuration not found",
        }), 503


@bp.route("/api/analysis")
def api_analysis():
    """Full analysis of the loaded snapshot."""
    result = _engine().analyze()
    return jsonify(analysis_to_dict(result))


@bp.route("/api/snapshot/reload", methods=["POST"])
def api_reload():
    """Discard the loaded snapshot; the next request reads a fresh one."""
    engine = current_app.extensions.get(EXTENSION_KEY)
    if engine is not None:
        engine.unload_snapshot()
    return jsonify({"status": "ok"})


@bp.route("/api/epics/<int:epic_id>/rag")
def api_epic_rag(epic_id: int):
    analysis = _engine().analyze_epic(epic_id)
    if analysis is None:
        return jsonify({"error": f"Epic {epic_id} not found"}), 404
    return jsonify(rag_analysis_to_dict(analysis))


@bp.route("/api/milestones/upcoming")
def api_upcoming_milestones():
    days = request.args.get("days", 30, type=int)
    if days < 0:
        return jsonify({"error": "days must not be negative"}), 400
    snapshot = _engine().snapshot
    items = upcoming(snapshot.milestones, days, snapshot.taken_at, snapshot.issues)
    return jsonify([
        {
            "id": m.milestone.id,
            "title": m.milestone.title,
            "due_date": m.milestone.due_date.isoformat() if m.milestone.due_date else None,
            "days_until": m.days_until,
            "progress": m.progress,
            "status": m.status,
        }
        for m in items
    ])


@bp.route("/api/capacity")
def api_capacity():
    """Capacity plan for ``?sprint=<id or title>``, or the current sprint."""
    plan = _engine().sprint_capacity(request.args.get("sprint"))
    if plan is None:
        return jsonify({"error": "No sprint found"}), 404
    return jsonify(to_jsonable(plan))


@bp.route("/api/velocity/<username>")
def api_member_velocity(username: str):
    service = _engine().velocity_service()
    return jsonify({
        "member": to_jsonable(service.member(username)),
        "fallback": to_jsonable(service.with_fallback(username)),
    })


@bp.route("/api/search")
def api_search():
    """Search by free text, then narrow by filter parameters."""
    snapshot = _engine().snapshot
    query = request.args.get("q", "")
    criteria = IssueFilter(
        state=request.args.get("state"),
        labels=request.args.getlist("label"),
        assignee=request.args.get("assignee"),
        epic_id=request.args.get("epic_id", type=int),
        milestone_id=request.args.get("milestone_id", type=int),
        priority=request.args.get("priority"),
        overdue=request.args.get("overdue") == "true",
    )
    issues = filter_issues(search_issues(snapshot.issues, query), criteria, snapshot.taken_at)
    return jsonify({
        "query": query,
        "issues": [issue_to_dict(i) for i in issues],
        "epics": [{"id": e.id, "title": e.title} for e in search_epics(snapshot.epics, query)],
        "milestones": [{"id": m.id, "title": m.title} for m in search_milestones(snapshot.milestones, query)],
        "options": filter_options(snapshot.issues),
    })


@bp.route("/api/export/<kind>.csv")
def api_export(kind: str):
    engine = _engine()
    snapshot = engine.snapshot
    if kind == "issues":
        body = issues_to_csv(snapshot.issues)
    elif kind == "epics":
        body = epics_to_csv(snapshot.epics, engine.settings.load().health, snapshot.taken_at)
    elif kind == "milestones":
        body = milestones_to_csv(snapshot.milestones, snapshot.issues)
    elif kind == "velocity":
        body = velocity_to_csv(engine.velocity_service().sprint())
    elif kind == "risks":
        body = risks_to_csv(engine.risks.all())
    elif kind == "initiatives":
        body = initiatives_to_csv(group_initiatives(snapshot.epics, snapshot.taken_at))
    elif kind == "absences":
        body = absences_to_csv(engine.absences.all())
    elif kind == "summary":
        body = summary_document_to_csv(engine.summary_document())
    else:
        return jsonify({"error": f"Unknown export '{kind}'"}), 404
    return Response(
        body,
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename={kind}.csv"},
    )


@bp.route("/api/settings")
def api_settings_get():
    return jsonify(config_to_dict(_settings_engine().settings.load()))


@bp.route("/api/settings", methods=["PUT"])
def api_settings_put():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "Request body must be a JSON object"}), 400
    try:
        config = config_from_dict(data)
    except (TypeError, AttributeError) as e:
        return jsonify({"error": f"Malformed settings: {e}"}), 400
    try:
        _settings_engine().settings.save(config)
    except InvalidConfigError as e:
        return jsonify({"error": str(e), "errors": e.errors}), 400
    return jsonify(config_to_dict(config))


@bp.route("/api/settings", methods=["DELETE"])
def api_settings_reset():
    return jsonify(config_to_dict(_settings_engine().settings.reset()))


@bp.route("/api/backup")
def api_backup():
    include_tokens = request.args.get("include_tokens") == "true"
    connection = None
    if config_exists():
        connection = _load_connection()
    document = create_backup(_settings_engine().store, connection, include_tokens)
    return jsonify(document)


@bp.route("/api/backup/validate", methods=["POST"])
def api_backup_validate():
    validation = validate_backup(request.get_json(silent=True))
    return jsonify(asdict(validation))


@bp.route("/api/backup/restore", methods=["POST"])
def api_backup_restore():
    """Restore a backup: ``{"backup": {...}, "policy", "policies", "categories", "apply_connection"}``."""
    body = request.get_json(silent=True)
    if not isinstance(body, dict) or "backup" not in body:
        return jsonify({"error": "Request body must contain a backup document"}), 400

    engine = _settings_engine()
    result = restore_backup(
        body["backup"],
        engine.store,
        policy=body.get("policy", "overwrite"),
        policies=body.get("policies"),
        categories=body.get("categories"),
    )
    # Restore writes the store directly; settings listeners do not run.
    engine.cache.invalidate()

    if result.connection is not None and body.get("apply_connection") and not result.needs_token_reentry:
        save_config(result.connection)

    return jsonify({
        "success": result.success,
        "restored": result.restored,
        "skipped": result.skipped,
        "failed": result.failed,
        "warnings": result.warnings,
        "needs_token_reentry": result.needs_token_reentry,
    })


@bp.route("/api/communications/import", methods=["POST"])
def api_import_email():
    """Import an uploaded .eml or .msg file as a communication record."""
    upload = request.files.get("file")
    if upload is None or not upload.filename:
        return jsonify({"error": "An email file is required"}), 400

    suffix = Path(upload.filename).suffix.lower()
    if suffix == ".eml":
        parsed = parse_eml(upload.read())
    elif suffix == ".msg":
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "upload.msg"
            upload.save(path)
            parsed = parse_msg(path)
    else:
        raise EmailParseError(f"Unsupported email file type '{suffix}'")

    log = _settings_engine().communications
    record = to_communication_record(parsed, log.stakeholders())
    log.add_record(record)
    return jsonify(record.to_dict()), 201


@bp.route("/api/communications/timeline")
def api_communication_timeline():
    days = request.args.get("days", 30, type=int)
    if days < 1:
        return jsonify({"error": "days must be at least 1"}), 400
    log = _settings_engine().communications
    return jsonify(communication_timeline(log.records(), utcnow(), days))


@bp.route("/demo")
def demo():
    """Analysis of built-in demo data (no GitLab credentials needed)."""
    now = utcnow()
    engine = AnalyticsEngine(KeyValueStore())
    engine.load_snapshot(build_snapshot(_demo_data(now), taken_at=now))
    return jsonify(analysis_to_dict(engine.analyze(now, record_history=False)))


def _demo_data(now) -> dict:
    today = now.date()

    def d(offset_days):
        return (today + timedelta(days=offset_days)).isoformat()

    sprints = [
        {"id": 1, "title": "Sprint 1", "start_date": d(-42), "due_date": d(-29)},
        {"id": 2, "title": "Sprint 2", "start_date": d(-28), "due_date": d(-15)},
        {"id": 3, "title": "Sprint 3", "start_date": d(-14), "due_date": d(-1)},
        {"id": 4, "title": "Sprint 4", "start_date": d(0), "due_date": d(13)},
        {"id": 5, "title": "Sprint 5", "start_date": d(14), "due_date": d(27)},
    ]
    people = {
        "ana": {"username": "ana", "name": "Ana Lima"},
        "raj": {"username": "raj", "name": "Raj Patel"},
    }

    def issue(iid, title, state, sprint, labels, assignee=None, epic=None, milestone=None, due=None):
        return {
            "id": 1000 + iid,
            "iid": iid,
            "title": title,
            "state": state,
            "description": f"Details for {title.lower()}." if iid % 3 else "",
            "labels": labels,
            "assignees": [people[assignee]] if assignee else [],
            "iteration": sprints[sprint - 1] if sprint else None,
            "epic": {"id": epic, "iid": epic - 100} if epic else None,
            "milestone": {"id": milestone, "iid": milestone - 200, "title": "Beta"} if milestone else None,
            "due_date": d(due) if due is not None else None,
            "created_at": f"{d(-50)}T09:00:00Z",
            "closed_at": f"{d(-16 if sprint and sprint < 3 else -2)}T17:00:00Z" if state == "closed" else None,
            "web_url": f"https://gitlab.example.com/demo/app/-/issues/{iid}",
        }

    return {
        "project_id": "demo",
        "iterations": sprints,
        "epics": [
            {"id": 101, "iid": 1, "title": "Checkout redesign", "state": "opened",
             "labels": ["initiative::conversion"], "start_date": d(-40), "due_date": d(20)},
            {"id": 102, "iid": 2, "title": "Payment provider migration", "state": "opened",
             "labels": ["initiative::conversion"], "start_date": d(-20), "end_date": d(70)},
            {"id": 103, "iid": 3, "title": "Audit logging", "state": "opened",
             "labels": ["initiative::compliance"], "start_date": d(10), "due_date": d(120)},
        ],
        "milestones": [
            {"id": 201, "iid": 1, "title": "Beta", "state": "active", "due_date": d(12)},
            {"id": 202, "iid": 2, "title": "Alpha", "state": "active", "due_date": d(-3)},
            {"id": 203, "iid": 3, "title": "GA", "state": "active", "due_date": d(60),
             "stats": {"total_issues": 20, "closed_issues": 4}},
        ],
        "issues": [
            issue(1, "Cart summary component", "closed", 1, ["sp::3", "priority::high"], "ana", 101, 202),
            issue(2, "Address form validation", "closed", 1, ["sp::2"], "raj", 101, 202),
            issue(3, "Shipping options API", "closed", 2, ["sp::5"], "ana", 101, 201),
            issue(4, "Guest checkout flow", "closed", 2, ["sp::3"], "raj", 101, 201),
            issue(5, "Order confirmation email", "closed", 3, ["sp::2"], "ana", 101, 201),
            issue(6, "Checkout analytics events", "opened", 4, ["sp::3", "workflow::in progress"],
                  "raj", 101, 201, due=5),
            issue(7, "Payment SDK upgrade", "opened", 4, ["sp::5", "blocked", "priority::critical"],
                  "ana", 102, 201, due=-2),
            issue(8, "Refund webhook handler", "opened", 4, ["sp::3", "workflow::review"], "raj", 102, due=9),
            issue(9, "Provider sandbox credentials", "closed", 3, ["sp::1"], "raj", 102),
            issue(10, "Dual-run reconciliation", "opened", None, [], None, 102),
            issue(11, "Audit event schema", "opened", 5, ["sp::2"], None, 103),
            issue(12, "Retention policy", "opened", None, ["priority::low"], None, 103),
        ],
    }

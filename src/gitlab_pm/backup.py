"""Versioned backup and restore of persisted settings and user artifacts."""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime

from gitlab_pm import __version__
from gitlab_pm.config import Config
from gitlab_pm.dates import utcnow
from gitlab_pm.exceptions import BackupError
from gitlab_pm.store import KeyValueStore, category_of

logger = logging.getLogger(__name__)

BACKUP_VERSION = "1.0.0"
CONNECTION_CATEGORY = "connection"
MASK = "***"

# Store categories, each of which may have project- and pod-scoped variants.
CATEGORIES = [
    "health",
    "velocity",
    "capacity",
    "team_config",
    "sprint_capacity",
    "absences",
    "risks",
    "stakeholders",
    "communications",
    "decisions",
    "documents",
    "preferences",
    "backlog_health_history",
]

POLICIES = ("overwrite", "skip-if-present", "merge")


def mask_token(token: str | None) -> str:
    """First and last four characters around ``***``; ``***`` for short tokens."""
    if not token or len(token) < 8:
        return MASK
    return f"{token[:4]}{MASK}{token[-4:]}"


def is_masked(token: str | None) -> bool:
    return bool(token) and MASK in token


def _major_minor(version: str) -> tuple[str, ...]:
    return tuple(str(version).split(".")[:2])


def create_backup(
    store: KeyValueStore,
    connection: Config | None = None,
    include_tokens: bool = False,
    now: datetime | None = None,
) -> dict:
    """Serialize every known category, in all its scopes, into a backup document.

    Args:
        store: Store to walk
        connection: GitLab connection settings to include
        include_tokens: Store the access token in clear; otherwise it is masked
        now: Timestamp recorded in the metadata

    Returns:
        Backup document ``{"metadata": {...}, "data": {...}}``
    """
    data: dict = {}
    included: set[str] = set()
    for key in store.keys():
        category = category_of(key, CATEGORIES)
        if category is None:
            continue
        data[key] = _backup_value(store.get_text(key))
        included.add(category)

    if connection is not None:
        data[CONNECTION_CATEGORY] = {
            "gitlab_url": connection.gitlab_url,
            "project_id": connection.project_id,
            "group_id": connection.group_id,
            "token": connection.token if include_tokens else mask_token(connection.token),
        }
        included.add(CONNECTION_CATEGORY)

    return {
        "metadata": {
            "version": BACKUP_VERSION,
            "timestamp": (now or utcnow()).isoformat(),
            "appVersion": __version__,
            "backupType": "plain",
            "includedData": sorted(included),
            "tokensIncluded": include_tokens,
            "itemCount": len(data),
        },
        "data": data,
    }


def _backup_value(text: str | None):
    """Decode stored JSON; strings and non-JSON text are kept as the raw stored text."""
    if text is None:
        return None
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        return text
    return text if isinstance(value, str) else value


def backup_to_json(document: dict) -> str:
    return json.dumps(document, indent=2)


def load_backup(text: str) -> dict:
    """Parse a backup document from JSON text.

    Raises:
        BackupError: If the text is not a JSON object
    """
    try:
        document = json.loads(text)
    except json.JSONDecodeError as e:
        raise BackupError(f"Backup is not valid JSON: {e}") from e
    if not isinstance(document, dict):
        raise BackupError("Backup must be a JSON object")
    return document


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    info: dict = field(default_factory=dict)


def validate_backup(document) -> ValidationResult:
    """Check structure and version of a backup document."""
    errors: list[str] = []
    warnings: list[str] = []

    if not isinstance(document, dict):
        return ValidationResult(valid=False, errors=["Backup must be an object"])

    metadata = document.get("metadata")
    data = document.get("data")
    if not isinstance(metadata, dict):
        errors.append("Missing metadata section")
        metadata = {}
    if not isinstance(data, dict):
        errors.append("Missing data section")
        data = {}

    version = metadata.get("version")
    if not version:
        errors.append("Missing backup version")
    elif _major_minor(version) != _major_minor(BACKUP_VERSION):
        warnings.append(f"Backup version {version} differs from {BACKUP_VERSION}; restoring anyway")

    item_count = metadata.get("itemCount")
    if item_count is not None and item_count != len(data):
        warnings.append(f"Metadata lists {item_count} items but {len(data)} are present")

    for key in data:
        if key != CONNECTION_CATEGORY and category_of(key, CATEGORIES) is None:
            warnings.append(f"Unrecognized data key '{key}' will be skipped")

    connection = data.get(CONNECTION_CATEGORY)
    if isinstance(connection, dict) and is_masked(connection.get("token")):
        warnings.append("GitLab token is masked and must be re-entered after restore")

    return ValidationResult(
        valid=not errors,
        errors=errors,
        warnings=warnings,
        info={
            "version": version,
            "timestamp": metadata.get("timestamp"),
            "item_count": len(data),
            "included_data": metadata.get("includedData", []),
            "tokens_included": bool(metadata.get("tokensIncluded")),
        },
    )


@dataclass
class RestoreResult:
    success: bool
    restored: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[dict] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    connection: Config | None = None
    needs_token_reentry: bool = False


def restore_backup(
    document: dict,
    store: KeyValueStore,
    policy: str = "overwrite",
    policies: dict[str, str] | None = None,
    categories: list[str] | None = None,
) -> RestoreResult:
    """Write a backup document back into the store.

    Args:
        document: Backup document
        store: Destination store
        policy: Default policy: ``overwrite``, ``skip-if-present`` or ``merge``
        policies: Per-category policy overrides
        categories: Restrict the restore to these categories

    Returns:
        RestoreResult listing restored, skipped and failed keys

    Raises:
        BackupError: If the document is invalid or a policy is unknown
    """
    validation = validate_backup(document)
    if not validation.valid:
        raise BackupError("; ".join(validation.errors))

    policies = policies or {}
    for name in [policy, *policies.values()]:
        if name not in POLICIES:
            raise BackupError(f"Unknown restore policy '{name}'")

    result = RestoreResult(success=True, warnings=list(validation.warnings))

    for key, value in document["data"].items():
        if key == CONNECTION_CATEGORY:
            if categories and CONNECTION_CATEGORY not in categories:
                result.skipped.append(key)
                continue
            result.connection, result.needs_token_reentry = _restore_connection(value)
            result.restored.append(key)
            continue

        category = category_of(key, CATEGORIES)
        if category is None or (categories and category not in categories):
            result.skipped.append(key)
            continue

        chosen = policies.get(category, policy)
        try:
            if chosen == "overwrite" or key not in store:
                if isinstance(value, str):
                    store.set_text(key, value)
                else:
                    store.set(key, value)
                result.restored.append(key)
            elif chosen == "skip-if-present":
                result.skipped.append(key)
            else:
                existing = store.get(key)
                if isinstance(existing, list) and isinstance(value, list):
                    store.set(key, existing + value)
                    result.restored.append(key)
                else:
                    result.skipped.append(key)
                    result.warnings.append(f"'{key}' is not a list; merge left it unchanged")
        except OSError as e:
            result.failed.append({"key": key, "error": str(e)})

    result.success = not result.failed
    logger.info(
        "Restored %d keys, skipped %d, failed %d",
        len(result.restored), len(result.skipped), len(result.failed),
    )
    return result


def _restore_connection(value) -> tuple[Config | None, bool]:
    if not isinstance(value, dict):
        return None, False
    token = value.get("token") or ""
    masked = is_masked(token)
    config = Config(
        gitlab_url=value.get("gitlab_url", ""),
        token="" if masked else token,
        project_id=str(value.get("project_id") or ""),
        group_id=value.get("group_id"),
    )
    return config, masked


def backup_statistics(document: dict) -> dict:
    """Item counts per key and serialized size of a backup document."""
    data = document.get("data", {})
    counts = {}
    for key, value in data.items():
        if isinstance(value, (list, dict)):
            counts[key] = len(value)
        else:
            counts[key] = 1
    return {
        "keys": len(data),
        "items": counts,
        "size_bytes": len(backup_to_json(document).encode("utf-8")),
    }


def compare_backups(old: dict, new: dict) -> dict:
    """Keys added, removed and changed between two backup documents."""
    old_data = old.get("data", {})
    new_data = new.get("data", {})
    return {
        "added": sorted(set(new_data) - set(old_data)),
        "removed": sorted(set(old_data) - set(new_data)),
        "changed": sorted(k for k in set(old_data) & set(new_data) if old_data[k] != new_data[k]),
    }


def clear_all(store: KeyValueStore) -> list[str]:
    """Delete every key that belongs to a backed-up category."""
    removed = [key for key in store.keys() if category_of(key, CATEGORIES) is not None]
    for key in removed:
        store.delete(key)
    return removed

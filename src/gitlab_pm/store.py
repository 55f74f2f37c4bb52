"""Key/value persistence for settings and user artifacts.

Values are UTF-8 text, by convention JSON. Keys follow three addressing
conventions that external readers rely on:

    <base>                 global
    <base>_<projectId>     project scope
    <base>_pod_<podId>     pod (group) scope
"""

import json
import logging
import tomllib
from pathlib import Path

import tomli_w

logger = logging.getLogger(__name__)

POD_PREFIX = "pod_"


def scoped_key(base: str, project_id: str | None = None, pod_id: str | None = None) -> str:
    """Build the storage key for a category in the narrowest given scope."""
    if pod_id:
        return f"{base}_{POD_PREFIX}{pod_id}"
    if project_id:
        return f"{base}_{project_id}"
    return base


def split_scoped_key(key: str, base: str) -> tuple[str, str | None] | None:
    """Decompose a key into (scope, scope_id) for a known base.

    Returns ("global", None), ("project", id) or ("pod", id), or None when the
    key does not belong to ``base``.
    """
    if key == base:
        return ("global", None)
    if not key.startswith(base + "_"):
        return None
    suffix = key[len(base) + 1:]
    if not suffix:
        return None
    if suffix.startswith(POD_PREFIX) and len(suffix) > len(POD_PREFIX):
        return ("pod", suffix[len(POD_PREFIX):])
    return ("project", suffix)


def category_of(key: str, bases: list[str]) -> str | None:
    """Return the longest base that ``key`` belongs to."""
    for base in sorted(bases, key=len, reverse=True):
        if split_scoped_key(key, base) is not None:
            return base
    return None


class KeyValueStore:
    """Text values addressed by key, persisted as one TOML table.

    A store created without a path lives in memory only.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = path
        self._entries: dict[str, str] = {}
        if path is not None and path.exists():
            with open(path, "rb") as f:
                data = tomllib.load(f)
            self._entries = {str(k): str(v) for k, v in data.get("entries", {}).items()}

    def get_text(self, key: str) -> str | None:
        return self._entries.get(key)

    def set_text(self, key: str, value: str) -> None:
        self._entries[key] = value
        self._flush()

    def get(self, key: str, default=None):
        """Decode the JSON value at ``key``; ``default`` when absent or corrupt."""
        text = self._entries.get(key)
        if text is None:
            return default
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            logger.warning("Ignoring corrupt value stored under %r", key)
            return default

    def set(self, key: str, value) -> None:
        self.set_text(key, json.dumps(value))

    def delete(self, key: str) -> bool:
        if key not in self._entries:
            return False
        del self._entries[key]
        self._flush()
        return True

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._entries if k.startswith(prefix))

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def clear(self) -> None:
        self._entries.clear()
        self._flush()

    def get_scoped(
        self,
        base: str,
        project_id: str | None = None,
        pod_id: str | None = None,
        default=None,
    ):
        """Read a category, preferring pod scope, then project, then global."""
        candidates = []
        if pod_id:
            candidates.append(scoped_key(base, pod_id=pod_id))
        if project_id:
            candidates.append(scoped_key(base, project_id=project_id))
        candidates.append(base)
        for key in candidates:
            if key in self._entries:
                return self.get(key, default)
        return default

    def _flush(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "wb") as f:
            tomli_w.dump({"entries": self._entries}, f)

"""
JSON-backed namespaced store for runtime settings, analyst weights and the decision journal.
"""

from __future__ import annotations

import json
import logging
import math
from contextlib import contextmanager
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterator, List, Mapping

logger = logging.getLogger(__name__)

SETTINGS_FILE = Path("data/settings_store.json")
WEIGHTS_NAMESPACE = "analyst_weights"
JOURNAL_NAMESPACE = "decision_journal"
JOURNAL_LIMIT = 200
_STORE_LOCK = Lock()


def _load_document(path: Path) -> Dict[str, Any]:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as exc:
        logger.debug("Cannot read %s: %s", path, exc)
        return {}
    try:
        document = json.loads(raw) if raw.strip() else {}
    except json.JSONDecodeError:
        logger.warning("Discarding unreadable store %s", path)
        return {}
    return document if isinstance(document, dict) else {}


def _dump_document(path: Path, document: Dict[str, Any]) -> None:
    staging = path.with_suffix(".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        staging.write_text(json.dumps(document, ensure_ascii=False, indent=2), encoding="utf-8")
        staging.replace(path)
    except OSError as exc:
        logger.error("Cannot persist store %s: %s", path, exc)


@contextmanager
def _editing(path: Path | None) -> Iterator[Dict[str, Any]]:
    """Hold the store lock around a read-modify-write of the whole document."""
    target = path or SETTINGS_FILE
    with _STORE_LOCK:
        document = _load_document(target)
        yield document
        _dump_document(target, document)


def load_namespace(namespace: str, path: Path | None = None) -> Dict[str, Any]:
    """Copy of one namespace; absent or malformed namespaces read as empty."""
    with _STORE_LOCK:
        section = _load_document(path or SETTINGS_FILE).get(namespace)
    return dict(section) if isinstance(section, dict) else {}


def save_namespace(namespace: str, payload: Dict[str, Any], path: Path | None = None) -> None:
    if not isinstance(payload, dict):
        raise ValueError(f"Namespace {namespace!r} payload must be a dict, got {type(payload).__name__}")
    with _editing(path) as document:
        document[namespace] = payload


def load_analyst_weights(path: Path | None = None) -> Dict[str, float]:
    """Persisted per-analyst performance weights; unusable entries are skipped."""
    weights: Dict[str, float] = {}
    for analyst_id, value in load_namespace(WEIGHTS_NAMESPACE, path).items():
        try:
            weight = float(value)
        except (TypeError, ValueError):
            weight = math.nan
        if not math.isfinite(weight) or weight <= 0:
            logger.warning("Ignoring invalid weight for %s: %r", analyst_id, value)
            continue
        weights[analyst_id] = weight
    return weights


def save_analyst_weights(weights: Mapping[str, float], path: Path | None = None) -> None:
    save_namespace(WEIGHTS_NAMESPACE, {key: float(value) for key, value in weights.items()}, path)


def append_decision(record: Mapping[str, Any], path: Path | None = None, *, limit: int = JOURNAL_LIMIT) -> None:
    """Append a decision record to the journal, keeping only the newest `limit` entries."""
    with _editing(path) as document:
        journal = document.get(JOURNAL_NAMESPACE)
        entries = journal.get("entries") if isinstance(journal, dict) else None
        if not isinstance(entries, list):
            entries = []
        entries.append(dict(record))
        document[JOURNAL_NAMESPACE] = {"entries": entries[-limit:]}


def load_decisions(path: Path | None = None) -> List[Dict[str, Any]]:
    entries = load_namespace(JOURNAL_NAMESPACE, path).get("entries")
    return [entry for entry in entries if isinstance(entry, dict)] if isinstance(entries, list) else []

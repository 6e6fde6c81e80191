"""
Deterministic storage path derivation.

Layout inside the bucket::

    {project_name}_{project_id}/
        options/{option_id}/model_{ts}.glb
        records/records_glb/{option_id}/{scenario_id}/processed_recording_{ts}.glb
        records/records_csv/{option_id}/{scenario_id}/raw_recording_{ts}.{json|csv}
        records/thumbnails/{option_id}/{scenario_id}/thumbnail_{ts}.png
        others/{context|heatmap}_{ts}.glb

Pure functions only: the same inputs always give the same path, and the caller
supplies the timestamp that keeps successive uploads distinct.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from upload_pipeline.db.models import EntityKind, FileKind

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_RAW_EXTENSIONS = ("json", "csv")
_UUID = r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"

_PROJECT_ROOT_RE = re.compile(rf"^(?P<name>.+)_(?P<project_id>{_UUID})/(?P<rest>.+)$")
_OPTION_RE = re.compile(r"^options/(?P<option_id>[^/]+)/(?P<file_kind>[a-z_]+)_(?P<ts>\d+)\.(?P<ext>\w+)$")
_RECORD_RE = re.compile(
    r"^records/(?P<folder>records_glb|records_csv|thumbnails)/(?P<option_id>[^/]+)/(?P<scenario_id>[^/]+)/"
    r"(?P<file_kind>[a-z_]+)_(?P<ts>\d+)\.(?P<ext>\w+)$"
)
_OTHER_RE = re.compile(r"^others/(?P<file_kind>[a-z_]+)_(?P<ts>\d+)\.(?P<ext>\w+)$")


@dataclass(frozen=True)
class EntityChain:
    """Identifiers from the project down to the option/scenario an upload belongs to."""

    project_name: str
    project_id: str
    option_id: Optional[str] = None
    scenario_id: Optional[str] = None


def sanitize_name(name: str) -> str:
    """Lowercase, collapse non-alphanumeric runs to ``_`` and trim the separators."""
    sanitized = _NON_ALNUM.sub("_", (name or "").lower()).strip("_")
    return sanitized or "project"


def project_root(chain: EntityChain) -> str:
    return f"{sanitize_name(chain.project_name)}_{chain.project_id}"


def to_epoch_millis(timestamp) -> int:
    if isinstance(timestamp, datetime):
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return int(timestamp.timestamp() * 1000)
    if isinstance(timestamp, bool) or not isinstance(timestamp, int):
        raise ValueError(f"timestamp must be epoch milliseconds or a datetime, got: {timestamp!r}")
    if timestamp < 0:
        raise ValueError(f"timestamp must be >= 0, got: {timestamp}")
    return timestamp


def _require(chain: EntityChain, *fields: str) -> None:
    missing = [name for name in fields if not getattr(chain, name)]
    if missing:
        raise ValueError(f"{', '.join(missing)} required for this file kind")


def resolve_path(chain: EntityChain, file_kind: FileKind, timestamp, extension: str | None = None) -> str:
    """Map (entity chain, file kind, timestamp) to the canonical object key."""
    file_kind = FileKind(file_kind)
    ts = to_epoch_millis(timestamp)
    root = project_root(chain)

    if file_kind is FileKind.model:
        _require(chain, "option_id")
        return f"{root}/options/{chain.option_id}/model_{ts}.glb"

    if file_kind is FileKind.processed_recording:
        _require(chain, "option_id", "scenario_id")
        return f"{root}/records/records_glb/{chain.option_id}/{chain.scenario_id}/processed_recording_{ts}.glb"

    if file_kind is FileKind.raw_recording:
        _require(chain, "option_id", "scenario_id")
        ext = (extension or "json").lower().lstrip(".")
        if ext not in _RAW_EXTENSIONS:
            raise ValueError(f"raw recordings must be json or csv, got: {extension!r}")
        return f"{root}/records/records_csv/{chain.option_id}/{chain.scenario_id}/raw_recording_{ts}.{ext}"

    if file_kind is FileKind.thumbnail:
        _require(chain, "option_id", "scenario_id")
        return f"{root}/records/thumbnails/{chain.option_id}/{chain.scenario_id}/thumbnail_{ts}.png"

    # context / heatmap live at project level
    return f"{root}/others/{file_kind.value}_{ts}.glb"


def entity_folder_paths(kind: EntityKind, chain: EntityChain) -> list[str]:
    """Storage prefixes owned by one entity, for enumerate-and-diff cleanup."""
    kind = EntityKind(kind)
    root = project_root(chain)

    if kind is EntityKind.option:
        _require(chain, "option_id")
        return [f"{root}/options/{chain.option_id}/"]
    if kind is EntityKind.record:
        _require(chain, "option_id", "scenario_id")
        return [
            f"{root}/records/{folder}/{chain.option_id}/{chain.scenario_id}/"
            for folder in ("records_glb", "records_csv", "thumbnails")
        ]
    return [f"{root}/others/"]


def parse_storage_path(path: str) -> dict | None:
    """Split an object key produced by ``resolve_path`` back into its parts."""
    match = _PROJECT_ROOT_RE.match(path)
    if not match:
        return None

    result = {
        "project_name": match.group("name"),
        "project_id": match.group("project_id"),
    }
    rest = match.group("rest")

    for category, pattern in (("options", _OPTION_RE), ("records", _RECORD_RE), ("others", _OTHER_RE)):
        parsed = pattern.match(rest)
        if parsed:
            groups = parsed.groupdict()
            result.update(
                category=category,
                option_id=groups.get("option_id"),
                scenario_id=groups.get("scenario_id"),
                file_kind=groups["file_kind"],
                timestamp=int(groups["ts"]),
                extension=groups["ext"],
            )
            return result

    return result

"""Per-run telemetry and "last launched app" persistence."""

import json
import uuid
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path

from launchkit import config
from launchkit.models import DestinationKind, LaunchResult

_STATE_ROOT: Path = config.LAUNCH_STATE_DIR


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _run_dir(run_id: str) -> Path:
    return _STATE_ROOT / run_id


def _events_path(run_id: str) -> Path:
    return _run_dir(run_id) / "events.jsonl"


def _last_launched_path() -> Path:
    return _STATE_ROOT / "last_launched.json"


def new_run_id() -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    suffix = uuid.uuid4().hex[:8]
    return f"launch_{stamp}_{suffix}"


def append_event(run_id: str, event: dict) -> None:
    """Append a telemetry event to the run's events.jsonl."""
    run_dir = _run_dir(run_id)
    run_dir.mkdir(parents=True, exist_ok=True)
    payload = dict(event)
    payload.setdefault("timestamp", _now_iso())
    with _events_path(run_id).open("a") as f:
        f.write(json.dumps(payload) + "\n")


def read_events(run_id: str) -> list[dict]:
    path = _events_path(run_id)
    if not path.exists():
        return []
    events: list[dict] = []
    for line in path.read_text().splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            events.append(json.loads(line))
        except json.JSONDecodeError:
            continue
    return events


def save_last_launched(
    run_id: str,
    launch_result: LaunchResult,
    build_label: str,
    destination_kind: DestinationKind,
) -> dict:
    record = {
        "run_id": run_id,
        "build_label": build_label,
        "destination_kind": destination_kind.value,
        **asdict(launch_result),
        "launched_at": _now_iso(),
    }
    _STATE_ROOT.mkdir(parents=True, exist_ok=True)
    _last_launched_path().write_text(json.dumps(record, indent=2))
    return record


def load_last_launched() -> dict | None:
    """Return the last launch record, or None if absent/corrupt."""
    path = _last_launched_path()
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text())
    except json.JSONDecodeError:
        return None

# audit.py -- Append-only provisioning event log.
# One pipe-separated line per event; units of a batch run on threads, so
# writes are serialized through a module lock.

import datetime
import threading
from pathlib import Path

_lock = threading.Lock()


def log_event(
    audit_file: str | None,
    unit: str,
    operation: str,
    target: str | None,
    outcome: str,
    detail: str | None = None,
) -> None:
    """Append a single event to the audit file.

    Each entry is one line of pipe-separated fields:
    timestamp | unit | operation | target_or_dash | outcome [| detail]

    Args:
        audit_file: Path to the audit log file, or None to skip logging.
        unit: The descriptor name (or "system" for run-level events).
        operation: The operation type (place, remove, expand, schedule, phase).
        target: The effective target path, or None for non-path events.
        outcome: The outcome (placed, failed, skipped, removed, warning, complete).
        detail: Optional additional context string.
    """
    if not audit_file:
        return
    timestamp = datetime.datetime.now(datetime.timezone.utc).isoformat()
    target_str = target if target else "-"
    line = f"{timestamp} | {unit} | {operation} | {target_str} | {outcome}"
    if detail:
        line += f" | {detail}"
    with _lock:
        Path(audit_file).parent.mkdir(parents=True, exist_ok=True)
        with open(audit_file, "a") as f:
            f.write(line + "\n")


def parse_line(line: str) -> dict[str, str | None]:
    """Split one audit line into its named fields."""
    parts = line.split(" | ", 5)
    parts += [None] * (6 - len(parts))
    keys = ("timestamp", "unit", "operation", "target", "outcome", "detail")
    return dict(zip(keys, parts))


def read_log(audit_file: str, last_n: int | None = None, unit: str | None = None) -> list[str]:
    """Read log entries from the audit file.

    Args:
        audit_file: Path to the audit log file.
        last_n: If specified, return only the last N matching entries.
        unit: If specified, only entries for this descriptor. User expansion
            entries ("user-secrets-alice/TOKEN") match their parent unit.

    Returns:
        List of raw line strings (one per entry).

    Raises:
        FileNotFoundError: If the audit file does not exist.
    """
    if not Path(audit_file).exists():
        raise FileNotFoundError(f"Audit log file not found at {audit_file}")
    with open(audit_file, "r") as f:
        lines = [line.rstrip() for line in f if line.strip()]
    if unit:
        lines = [
            line for line in lines
            if (parse_line(line)["unit"] or "").split("/", 1)[0] == unit
        ]
    if last_n is not None and last_n > 0:
        lines = lines[-last_n:]
    return lines

"""
Backup catalog as reported by ``barman-cloud-backup-list --format json``.

The tool prints::

    {"backups_list": [{"backup_id": "20240101T000000", "status": "DONE",
                       "begin_time": "Mon Jan  1 00:00:00 2024", ...}]}

Newer barman releases also emit ``begin_time_iso`` / ``end_time_iso``,
which are preferred when present. Naive times are UTC.

Invariants:
    - Backups are kept sorted by end time, unfinished ones first
    - Only DONE backups count for the recovery window
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

BACKUP_STATUS_DONE = "DONE"

_CTIME_FORMAT = "%a %b %d %H:%M:%S %Y"


def _parse_time(entry: dict[str, Any], field_name: str) -> datetime | None:
    iso = entry.get(f"{field_name}_iso")
    raw = entry.get(field_name)
    if iso:
        parsed = datetime.fromisoformat(iso)
    elif raw:
        parsed = datetime.strptime(" ".join(raw.split()), _CTIME_FORMAT)
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class BackupInfo:
    """One backup in the remote catalog."""

    backup_id: str
    status: str
    backup_name: str = ""
    begin_time: datetime | None = None
    end_time: datetime | None = None
    begin_wal: str = ""
    end_wal: str = ""
    timeline: int = 0

    @classmethod
    def from_dict(cls, entry: dict[str, Any]) -> BackupInfo:
        return cls(
            backup_id=entry["backup_id"],
            status=entry.get("status", ""),
            backup_name=entry.get("backup_name") or "",
            begin_time=_parse_time(entry, "begin_time"),
            end_time=_parse_time(entry, "end_time"),
            begin_wal=entry.get("begin_wal") or "",
            end_wal=entry.get("end_wal") or "",
            timeline=int(entry.get("timeline") or 0),
        )

    def is_done(self) -> bool:
        return self.status == BACKUP_STATUS_DONE and self.end_time is not None


class BackupCatalog:
    """The backups of one server in the archive."""

    def __init__(self, backups: list[BackupInfo]) -> None:
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        self.backups = sorted(backups, key=lambda b: b.end_time or epoch)

    @classmethod
    def from_json(cls, text: str) -> BackupCatalog:
        """Parse the tool output.

        Raises:
            ValueError: If the output is not a backup list
        """
        try:
            data = json.loads(text) if text.strip() else {"backups_list": []}
            entries = data["backups_list"] or []
            return cls([BackupInfo.from_dict(entry) for entry in entries])
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise ValueError(f"malformed backup list: {e}") from e

    def __len__(self) -> int:
        return len(self.backups)

    def backup_ids(self) -> list[str]:
        return [backup.backup_id for backup in self.backups]

    def first_recoverability_point(self) -> datetime | None:
        """End time of the oldest completed backup."""
        for backup in self.backups:
            if backup.is_done():
                return backup.end_time
        return None

    def last_successful_backup_time(self) -> datetime | None:
        """End time of the newest completed backup."""
        for backup in reversed(self.backups):
            if backup.is_done():
                return backup.end_time
        return None

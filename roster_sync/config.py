"""
Configuration for the roster sync tool.
"""
import json
import os
import re
from enum import Enum
from pathlib import Path
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


# === Column Alias Tables ===
# Exact aliases are tried in list order (case-insensitive) before any
# "contains" fallback is considered.

FIRST_NAME_ALIASES = [
    "Student firstname", "First Name", "Firstname", "First",
    "Athlete First Name", "Athlete First", "Athlete FirstName", "Given Name",
]

LAST_NAME_ALIASES = [
    "Student lastname", "Last Name", "Lastname", "Last",
    "Athlete Last Name", "Athlete Last", "Athlete LastName",
    "Surname", "Family Name",
]

FULL_NAME_ALIASES = [
    "Name", "Full Name", "Fullname", "Player", "Player Name",
    "Student", "Student Name", "Person",
]

GROUP_ALIASES = ["Group", "Team", "Class", "Homeroom"]
GROUP_CONTAINS = ["team", "group", "class", "division", "squad", "homeroom"]

IDENTIFIER_ALIASES = ["Barcode", "Barcode (1)", "Child ID", "Student ID", "ID"]
IDENTIFIER_CONTAINS = ["barcode", "id"]

PHOTOGRAPHED_ALIASES = [
    "Reference", "Photographed", "Photograph", "Captured", "Taken",
    "Shot", "Complete", "Completed", "Done",
]

HAS_PHOTO_ALIASES = ["Photo", "Has Photo"]

# === Metadata Columns ===
PHOTOGRAPHED_BY = "Photographed By"
PHOTOGRAPHED_AT = "Photographed At"
LAST_EDITED_BY = "Last Edited By"
LAST_EDITED_AT = "Last Edited At"

METADATA_COLUMNS = [PHOTOGRAPHED_BY, PHOTOGRAPHED_AT, LAST_EDITED_BY, LAST_EDITED_AT]

# Header written when a store needs an identifier column it does not have
DEFAULT_IDENTIFIER_HEADER = "Barcode"
DEFAULT_FIRST_NAME_HEADER = "First Name"
DEFAULT_LAST_NAME_HEADER = "Last Name"
DEFAULT_GROUP_HEADER = "Group"

# === Encodings ===
AUDIT_SUFFIX = "_O"
SYNTHETIC_PREFIX = "ROSTER_"
PLACEHOLDER_FIRST_NAME = "Add"
PLACEHOLDER_LAST_NAME = "Subject"
DEFAULT_GROUP = "No Group"
AUTOMATION_DEFAULT_GROUP = "Manual Sort"
CANONICAL_YES = "yes"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

TRUTHY_VALUES = frozenset({
    "yes", "y", "true", "t", "1", "done", "x", "✓", "✔",
    "photographed", "photo", "captured", "taken", "shot",
    "complete", "completed",
})

# === Job Folder Conventions ===
JOB_CONFIG_FILENAME = "job.json"
SYSTEM_FILE_PREFIXES = ("backup_", "merged_", "conflicts_", "merge_conflicts_")
DATA_FILE_EXTENSIONS = {".csv", ".xlsx", ".xls"}

# Worker identities that never receive their own copy
SENTINEL_WORKER_IDS = frozenset({"SingleUser", "TempUser", "Single Photographer"})
SINGLE_WORKER_ID = "Single Photographer"


class CollaborationMode(Enum):
    """How many workers share a job folder."""
    SOLO = "solo"
    TEAM = "team"


def parse_team_ids(raw: Optional[str]) -> List[str]:
    """
    Split a delimited team member string into identifiers.

    Entries may be separated by commas or newlines; surrounding whitespace
    is trimmed and empty entries are dropped.
    """
    if not raw:
        return []
    return [part.strip() for part in re.split(r"[,\n]", raw) if part.strip()]


def safe_worker_id(worker_id: str) -> str:
    """Return a worker ID that is safe to embed in a file name."""
    return re.sub(r"[^A-Za-z0-9_-]", "_", worker_id)


@dataclass
class JobConfig:
    """
    Per-job collaboration settings, persisted as job.json in the job folder.
    """
    collaboration_mode: CollaborationMode = CollaborationMode.SOLO
    my_worker_id: str = ""
    team_workers: str = ""

    @property
    def team_ids(self) -> List[str]:
        return parse_team_ids(self.team_workers)

    @property
    def is_team(self) -> bool:
        return self.collaboration_mode == CollaborationMode.TEAM

    def effective_worker_id(self) -> str:
        """Worker identity to stamp on edits."""
        return self.my_worker_id.strip() or SINGLE_WORKER_ID

    def to_dict(self) -> dict:
        return {
            "collaborationMode": self.collaboration_mode.value,
            "myPhotographerID": self.my_worker_id,
            "teamPhotographers": self.team_workers,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'JobConfig':
        mode = data.get("collaborationMode", CollaborationMode.SOLO.value)
        try:
            collaboration_mode = CollaborationMode(mode)
        except ValueError:
            collaboration_mode = CollaborationMode.SOLO
        return cls(
            collaboration_mode=collaboration_mode,
            my_worker_id=data.get("myPhotographerID", "") or "",
            team_workers=data.get("teamPhotographers", "") or "",
        )

    def save(self, folder: Path):
        """Write job.json atomically into the given job folder."""
        from .file_utils import atomic_write_text
        path = Path(folder) / JOB_CONFIG_FILENAME
        atomic_write_text(path, json.dumps(self.to_dict(), indent=2))

    @classmethod
    def load(cls, folder: Path) -> 'JobConfig':
        """Load job.json from a job folder, or defaults if it does not exist."""
        path = Path(folder) / JOB_CONFIG_FILENAME
        if not path.exists():
            return cls()
        with open(path, 'r', encoding='utf-8') as f:
            return cls.from_dict(json.load(f))


@dataclass
class Config:
    """Runtime configuration for the roster sync tool."""

    # Worker identity and collaboration defaults (overridden by job.json)
    worker_id: str = field(
        default_factory=lambda: os.environ.get('ROSTER_SYNC_WORKER_ID', '')
    )
    collaboration_mode: str = field(
        default_factory=lambda: os.environ.get('ROSTER_SYNC_MODE', CollaborationMode.SOLO.value)
    )
    team_workers: str = field(
        default_factory=lambda: os.environ.get('ROSTER_SYNC_TEAM', '')
    )

    # Logging
    log_dir: Optional[Path] = field(
        default_factory=lambda: Path(os.environ['ROSTER_SYNC_LOG_DIR'])
        if os.environ.get('ROSTER_SYNC_LOG_DIR') else None
    )

    # Quiet period before a scheduled save is written (seconds)
    debounce_seconds: float = field(
        default_factory=lambda: float(os.environ.get('ROSTER_SYNC_DEBOUNCE', '0.5'))
    )

    def job_config(self) -> JobConfig:
        """Build a JobConfig from the environment defaults."""
        return JobConfig.from_dict({
            "collaborationMode": self.collaboration_mode,
            "myPhotographerID": self.worker_id,
            "teamPhotographers": self.team_workers,
        })


# Global config instance
config = Config()

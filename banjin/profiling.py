"""Server profiles: collected facts plus operator/LLM notes and tags.

Profiles live behind a ``ProfileStore`` so the tools never care whether they
end up on disk or only in memory for the session.
"""

import re
import json
import logging
import pathlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)

HOSTNAME_PATTERN = re.compile(r'[\w@.:-]+')
RISK_LEVELS = ("low", "medium", "high")


def validate_hostname(hostname: str) -> str:
    if not hostname or not HOSTNAME_PATTERN.fullmatch(hostname):
        raise ValueError(f"invalid host name '{hostname}'")
    return hostname


class ProfileStore(Protocol):
    def load(self, hostname: str) -> Optional[Dict[str, Any]]: ...
    def save(self, hostname: str, profile: Dict[str, Any]) -> str: ...


class MemoryProfileStore:
    """Keeps profiles for the lifetime of the process only."""

    def __init__(self):
        self._profiles: Dict[str, Dict[str, Any]] = {}

    def load(self, hostname: str) -> Optional[Dict[str, Any]]:
        profile = self._profiles.get(hostname)
        return json.loads(json.dumps(profile)) if profile is not None else None

    def save(self, hostname: str, profile: Dict[str, Any]) -> str:
        self._profiles[validate_hostname(hostname)] = json.loads(json.dumps(profile))
        return f"memory:{hostname}"


class FileProfileStore:
    """One ``<hostname>.json`` per server under ``<base_dir>/profiles``."""

    def __init__(self, base_dir: pathlib.Path):
        self.profiles_dir = pathlib.Path(base_dir) / "profiles"

    def _path(self, hostname: str) -> pathlib.Path:
        return self.profiles_dir / f"{validate_hostname(hostname)}.json"

    def load(self, hostname: str) -> Optional[Dict[str, Any]]:
        path = self._path(hostname)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Could not read profile %s: %s", path, e)
            return None

    def save(self, hostname: str, profile: Dict[str, Any]) -> str:
        path = self._path(hostname)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(profile, indent=2), encoding="utf-8")
        return str(path)


@dataclass
class ProfileSuggestion:
    hostname: str
    proposed_note: str = ""
    proposed_tags: List[str] = field(default_factory=list)
    current_notes: str = ""
    current_tags: List[str] = field(default_factory=list)


@dataclass
class ActionPlan:
    title: str
    description: str
    steps: List[str]
    estimated_time: str = "unknown"
    risk: str = "medium"

    def render(self) -> str:
        lines = [
            f"Title: {self.title}",
            f"Description: {self.description}",
            f"Estimated Time: {self.estimated_time}",
            f"Risk Level: {self.risk.upper()}",
            "Steps:",
        ]
        lines.extend(f"  {i}. {step}" for i, step in enumerate(self.steps, start=1))
        return "\n".join(lines)


def create_profile_suggestion(store: ProfileStore, hostname: str, note: str = "",
                              tags: Optional[List[str]] = None) -> ProfileSuggestion:
    profile = store.load(hostname) or {}
    return ProfileSuggestion(
        hostname=hostname,
        proposed_note=note or "",
        proposed_tags=list(tags or []),
        current_notes=profile.get("notes", ""),
        current_tags=list(profile.get("tags", [])),
    )


def apply_profile_suggestion(store: ProfileStore, suggestion: ProfileSuggestion) -> str:
    profile = store.load(suggestion.hostname)
    if profile is None:
        return f"Profile not found for {suggestion.hostname}. Run /profile collect first."

    note = suggestion.proposed_note.strip()
    if note:
        existing = profile.get("notes", "")
        profile["notes"] = f"{existing}\n---\n{note}" if existing else note
    if suggestion.proposed_tags:
        tags = list(profile.get("tags", []))
        tags.extend(t for t in suggestion.proposed_tags if t not in tags)
        profile["tags"] = tags

    location = store.save(suggestion.hostname, profile)

    applied = []
    if note:
        applied.append(f'note: "{note}"')
    if suggestion.proposed_tags:
        applied.append(f"tags: [{', '.join(suggestion.proposed_tags)}]")
    return f"Profile updated for {suggestion.hostname} with {', '.join(applied)}. Saved to {location}"


def summarize_profile(profile: Dict[str, Any]) -> str:
    hardware = profile.get("hardware", {})
    os_info = profile.get("os", {})
    disks = ", ".join(f"{d['mount']}: {d['size_gb']}GB ({d['used_gb']}GB used)"
                      for d in hardware.get("disks", []))
    services = ", ".join(s["name"] for s in profile.get("services", [])[:5])

    summary = (f"Server Facts: {os_info.get('name', 'unknown')} {os_info.get('version', 'unknown')} "
               f"({hardware.get('cores', 0)} cores, {hardware.get('ram_gb', 0)}GB RAM). "
               f"Disks: {disks or 'N/A'}. Services: {services or 'N/A'}.")
    if profile.get("tags"):
        summary += f" Tags: [{', '.join(profile['tags'])}]."
    if profile.get("notes", "").strip():
        summary += f" Notes: {profile['notes']}"
    return summary

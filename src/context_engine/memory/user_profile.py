"""
User Profile Manager - Durable user information and preferences.

Profiles live in the LONG_TERM tier, separate from session state. Core
attributes change only by explicit user action; learned preferences
accumulate from conversation and are merged, never replaced.

Compliance operations (export, delete, anonymize) span every tier and are
safe to retry: each step is idempotent and a failure is reported as
ComplianceOperationFailed rather than a partial success.
"""

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from ..errors import ComplianceOperationFailed, ContextEngineError
from ..locks import KeyedLocks
from .store import MemoryStore, MemoryTier, utcnow

if TYPE_CHECKING:
    from ..engine.session import SessionManager

logger = logging.getLogger(__name__)

PROFILE_NAMESPACE = "profiles"
SESSION_NAMESPACE = "sessions"

# Preference keys that identify a person
PII_KEYS = {
    "name",
    "full_name",
    "preferred_name",
    "email",
    "phone",
    "address",
    "location",
    "workplace",
    "birthday",
    "date_of_birth",
}

EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
# International numbers start with "+"; local ones need the 3-3-4 grouping
PHONE_RE = re.compile(
    r"(?<![\w-])(?:\+\d[\d\s().-]{7,}\d|(?:\(\d{3}\)\s?|\d{3}[\s.-])\d{3}[\s.-]\d{4})(?![\w-])"
)

# Phrases that reveal durable facts about the user
PREFERENCE_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("name", re.compile(r"\b(?i:my name is) ([A-Z][\w'-]*(?: [A-Z][\w'-]*)?)")),
    ("preferred_name", re.compile(r"\bcall me ([A-Za-z][\w'-]*)", re.IGNORECASE)),
    ("workplace", re.compile(r"\bi (?:work at|work for) ([^.!?,\n]+)", re.IGNORECASE)),
    ("location", re.compile(r"\bi live in ([^.!?,\n]+)", re.IGNORECASE)),
    ("likes", re.compile(r"\bi (?:prefer|like|love) ([^.!?\n]+)", re.IGNORECASE)),
    ("dislikes", re.compile(r"\bi (?:dislike|hate|don't like) ([^.!?\n]+)", re.IGNORECASE)),
]

# Keys that accumulate many values
LIST_PREFERENCES = {"likes", "dislikes"}


def merge_preferences(current: dict[str, Any], update: dict[str, Any]) -> dict[str, Any]:
    """Merge without destroying: dicts merge recursively, lists union, scalars replace."""
    merged = dict(current)
    for key, value in update.items():
        existing = merged.get(key)
        if isinstance(existing, dict) and isinstance(value, dict):
            merged[key] = merge_preferences(existing, value)
        elif isinstance(existing, list):
            additions = value if isinstance(value, list) else [value]
            merged[key] = existing + [v for v in additions if v not in existing]
        else:
            merged[key] = value
    return merged


def strip_pii(data: Any) -> Any:
    """Remove identifying keys and drop values that look like emails or phone numbers."""
    if isinstance(data, dict):
        cleaned = {}
        for key, value in data.items():
            if key.lower() in PII_KEYS:
                continue
            value = strip_pii(value)
            if value is not None:
                cleaned[key] = value
        return cleaned
    if isinstance(data, list):
        return [v for v in (strip_pii(item) for item in data) if v is not None]
    if isinstance(data, str) and (EMAIL_RE.search(data) or PHONE_RE.search(data)):
        return None
    return data


def extract_preferences(text: str) -> dict[str, Any]:
    """Pull preference facts out of a user's message."""
    found: dict[str, Any] = {}
    for key, pattern in PREFERENCE_PATTERNS:
        for match in pattern.finditer(text):
            value = match.group(1).strip()
            if not value:
                continue
            if key in LIST_PREFERENCES:
                found.setdefault(key, [])
                if value not in found[key]:
                    found[key].append(value)
            else:
                found[key] = value
    return found


@dataclass
class UserProfile:
    """Durable profile of one user."""

    user_id: str
    core_attributes: dict[str, Any] = field(default_factory=dict)
    learned_preferences: dict[str, Any] = field(default_factory=dict)
    last_modified: datetime = field(default_factory=utcnow)
    # Set while an anonymization is in flight so a retry reuses the same id
    anonymized_as: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "core_attributes": self.core_attributes,
            "learned_preferences": self.learned_preferences,
            "last_modified": self.last_modified.isoformat(),
            "anonymized_as": self.anonymized_as,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UserProfile":
        return cls(
            user_id=data["user_id"],
            core_attributes=dict(data.get("core_attributes") or {}),
            learned_preferences=dict(data.get("learned_preferences") or {}),
            last_modified=datetime.fromisoformat(data["last_modified"]),
            anonymized_as=data.get("anonymized_as"),
        )

    def get_context_for_prompt(self) -> str:
        """Format the profile for inclusion in a prompt."""
        parts = []
        for title, values in (
            ("User", self.core_attributes),
            ("Learned Preferences", self.learned_preferences),
        ):
            if not values:
                continue
            lines = []
            for key, value in values.items():
                if isinstance(value, list):
                    value = ", ".join(str(v) for v in value)
                lines.append(f"- **{key.replace('_', ' ').title()}**: {value}")
            parts.append(f"**{title}:**\n" + "\n".join(lines))
        return "\n\n".join(parts)


@dataclass
class ExportBundle:
    """Everything stored about a user, for data-portability requests."""

    user_id: str
    profile: dict[str, Any] | None = None
    sessions: list[dict[str, Any]] = field(default_factory=list)
    memories: dict[str, list[dict[str, Any]]] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return self.profile is None and not self.sessions and not any(self.memories.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "profile": self.profile,
            "sessions": self.sessions,
            "memories": self.memories,
        }


class ProfileManager:
    """Manages user profiles and per-user compliance operations."""

    def __init__(
        self,
        store: MemoryStore,
        sessions: "SessionManager | None" = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the profile manager.

        Args:
            store: Memory store holding profiles and all user records
            sessions: Session manager whose active index must be cleared on delete
            clock: Time source
        """
        self.store = store
        self.sessions = sessions
        self.clock = clock
        self._locks = KeyedLocks()

    async def _save(self, profile: UserProfile) -> None:
        await self.store.store(
            profile.user_id,
            profile.to_dict(),
            MemoryTier.LONG_TERM,
            namespace=PROFILE_NAMESPACE,
            owner_user_id=profile.user_id,
        )

    async def get(self, user_id: str) -> UserProfile | None:
        """Get a user's profile, or None if there is none."""
        data = await self.store.retrieve(user_id, MemoryTier.LONG_TERM, namespace=PROFILE_NAMESPACE)
        return UserProfile.from_dict(data) if data else None

    async def update(
        self,
        user_id: str,
        core_attributes: dict[str, Any] | None = None,
        learned_preferences: dict[str, Any] | None = None,
    ) -> UserProfile:
        """Create or update a profile.

        Core attributes are set key by key. Learned preferences are merged into
        what is already known.
        """
        async with self._locks.hold(user_id):
            profile = await self.get(user_id) or UserProfile(user_id=user_id)
            if core_attributes:
                profile.core_attributes.update(core_attributes)
            if learned_preferences:
                profile.learned_preferences = merge_preferences(
                    profile.learned_preferences, learned_preferences
                )
            profile.last_modified = self.clock()
            await self._save(profile)

        logger.info(f"Updated profile for user {user_id}")
        return profile

    async def learn_from_text(self, user_id: str, text: str) -> dict[str, Any]:
        """Extract preferences from a user message and merge them in.

        Returns the extracted preferences (empty when nothing was found).
        """
        found = extract_preferences(text)
        if found:
            await self.update(user_id, learned_preferences=found)
        return found

    async def export_all(self, user_id: str) -> ExportBundle:
        """Collect the profile plus all session and memory records of a user."""
        try:
            bundle = ExportBundle(user_id=user_id)
            profile = await self.get(user_id)
            if profile is not None:
                bundle.profile = profile.to_dict()

            sessions: dict[str, dict[str, Any]] = {}
            for tier in MemoryTier:
                for record in await self.store.records_for_owner(user_id, tier):
                    if record.namespace == PROFILE_NAMESPACE:
                        continue
                    if record.namespace == SESSION_NAMESPACE:
                        sessions[record.key] = record.value
                    else:
                        bundle.memories.setdefault(tier.value, []).append(record.to_dict())

            if self.sessions is not None:
                for session in await self.sessions.list_active_sessions(user_id):
                    sessions[session.session_id] = session.to_dict()

            bundle.sessions = list(sessions.values())
            return bundle
        except ContextEngineError as e:
            raise ComplianceOperationFailed("export", user_id, str(e)) from e

    async def _delete(self, user_id: str) -> int:
        removed = 0
        if self.sessions is not None:
            removed += await self.sessions.drop_user_sessions(user_id)
        for tier in MemoryTier:
            removed += await self.store.purge_owner(user_id, tier)
        await self.store.forget(user_id, MemoryTier.LONG_TERM, namespace=PROFILE_NAMESPACE)
        return removed

    async def delete(self, user_id: str) -> None:
        """Hard-delete the profile, sessions and records of a user in every tier."""
        async with self._locks.hold(user_id):
            try:
                removed = await self._delete(user_id)
            except ContextEngineError as e:
                logger.error(f"Delete for user {user_id} did not complete: {e}")
                raise ComplianceOperationFailed("delete", user_id, str(e)) from e
        logger.info(f"Deleted user {user_id} ({removed} records)")

    async def anonymize(self, user_id: str) -> str | None:
        """Detach a profile from its user.

        Identifying data is stripped, the remainder is stored under a random
        identifier, and everything belonging to ``user_id`` is deleted.

        Returns:
            The anonymous identifier, or None if the user had no profile
        """
        async with self._locks.hold(user_id):
            try:
                profile = await self.get(user_id)
                if profile is None:
                    await self._delete(user_id)
                    return None

                anon_id = profile.anonymized_as
                if anon_id is None:
                    anon_id = f"anon-{uuid4().hex}"
                    profile.anonymized_as = anon_id
                    await self._save(profile)

                await self._save(UserProfile(
                    user_id=anon_id,
                    core_attributes=strip_pii(profile.core_attributes),
                    learned_preferences=strip_pii(profile.learned_preferences),
                    last_modified=self.clock(),
                ))
                await self._delete(user_id)
            except ContextEngineError as e:
                logger.error(f"Anonymize for user {user_id} did not complete: {e}")
                raise ComplianceOperationFailed("anonymize", user_id, str(e)) from e

        logger.info(f"Anonymized user {user_id}")
        return anon_id

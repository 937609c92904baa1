"""
Storage backends for memory tiers.

A backend stores whole MemoryRecords keyed by (namespace, key). The store
picks one backend per tier, so an in-process map and a database can serve
different tiers of the same engine.
"""

import copy
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .store import MemoryRecord


@runtime_checkable
class TierBackend(Protocol):
    """Key-addressed record storage for one tier."""

    async def get(self, namespace: str, key: str) -> "MemoryRecord | None":
        ...

    async def set(self, record: "MemoryRecord") -> None:
        ...

    async def delete(self, namespace: str, key: str) -> bool:
        ...

    async def scan(
        self,
        namespace: str | None = None,
        owner_user_id: str | None = None,
        include_unowned: bool = False,
    ) -> list["MemoryRecord"]:
        """Records in one tier; with an owner, ``include_unowned`` adds records that have none."""
        ...

    async def close(self) -> None:
        ...


class InMemoryBackend:
    """Process-local backend. Records are copied in and out, so a caller
    mutating a value never changes what is stored."""

    def __init__(self) -> None:
        self._records: dict[tuple[str, str], "MemoryRecord"] = {}

    async def get(self, namespace: str, key: str) -> "MemoryRecord | None":
        record = self._records.get((namespace, key))
        return copy.deepcopy(record) if record is not None else None

    async def set(self, record: "MemoryRecord") -> None:
        self._records[(record.namespace, record.key)] = copy.deepcopy(record)

    async def delete(self, namespace: str, key: str) -> bool:
        return self._records.pop((namespace, key), None) is not None

    async def scan(
        self,
        namespace: str | None = None,
        owner_user_id: str | None = None,
        include_unowned: bool = False,
    ) -> list["MemoryRecord"]:
        owners = {owner_user_id, None} if include_unowned else {owner_user_id}
        return [
            copy.deepcopy(record)
            for record in list(self._records.values())
            if (namespace is None or record.namespace == namespace)
            and (owner_user_id is None or record.owner_user_id in owners)
        ]

    async def close(self) -> None:
        pass

    def __len__(self) -> int:
        return len(self._records)

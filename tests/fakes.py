"""
In-memory test doubles shared by the unit and integration tests.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from syncengine.models import (
    BulkFetchResult,
    ChangePage,
    RateLimitInfo,
    RemoteSnapshot,
)

T0 = datetime(2026, 1, 10, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable clock; every call returns the same instant until advanced."""

    def __init__(self, start: datetime = T0):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float = 1.0) -> datetime:
        self.current += timedelta(seconds=seconds)
        return self.current


def make_record(
    external_id: str,
    version: int,
    updated_at: Optional[datetime] = None,
    **fields: Any,
) -> Dict[str, Any]:
    """Remote API record body."""
    return {
        "id": external_id,
        "version": version,
        "updated_at": (updated_at or T0).isoformat(),
        **fields,
    }


class FakeRemote:
    """
    In-memory stand-in for RemoteClient.

    Records are stored as API bodies; failures queued with fail_next() are
    raised by the next calls in order.
    """

    def __init__(self, bulk_limit: int = 200):
        self.records: Dict[str, Dict[str, Any]] = {}
        self.changes: List[Dict[str, Any]] = []
        self.change_page_size = 100
        self.rate_limit = RateLimitInfo()
        self.bulk_limit = bulk_limit
        self.calls: List[str] = []
        self.delay = 0.0
        self._failures: List[BaseException] = []
        self._bulk_failures: List[BaseException] = []
        self._next_id = 1

    def put(self, external_id: str, version: int, **fields: Any) -> Dict[str, Any]:
        record = make_record(external_id, version, **fields)
        self.records[external_id] = record
        return record

    def fail_next(self, *errors: BaseException) -> None:
        self._failures.extend(errors)

    def fail_bulk(self, *errors: BaseException) -> None:
        self._bulk_failures.extend(errors)

    async def _maybe_fail(self) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self._failures:
            raise self._failures.pop(0)

    async def get_by_id(self, external_id: str) -> Optional[RemoteSnapshot]:
        self.calls.append(f"get:{external_id}")
        await self._maybe_fail()
        record = self.records.get(external_id)
        return RemoteSnapshot.from_api(dict(record)) if record else None

    async def bulk_get_by_ids(self, ids: Iterable[str]) -> BulkFetchResult:
        requested = list(dict.fromkeys(ids))
        self.calls.append(f"bulk:{len(requested)}")
        if self._bulk_failures:
            raise self._bulk_failures.pop(0)
        found = [RemoteSnapshot.from_api(dict(self.records[i])) for i in requested if i in self.records]
        return BulkFetchResult(
            found=found, missing=[i for i in requested if i not in self.records]
        )

    async def list_changed_since(self, since: datetime, cursor: Optional[str] = None) -> ChangePage:
        self.calls.append(f"changes:{cursor}")
        start = int(cursor or 0)
        page = self.changes[start:start + self.change_page_size]
        end = start + len(page)
        return ChangePage(
            items=[RemoteSnapshot.from_api(dict(item)) for item in page],
            next_cursor=str(end) if end < len(self.changes) else None,
        )

    async def create(self, fields: Dict[str, Any]) -> RemoteSnapshot:
        self.calls.append("create")
        await self._maybe_fail()
        external_id = f"r-{self._next_id}"
        self._next_id += 1
        record = make_record(external_id, 1, **fields)
        self.records[external_id] = record
        return RemoteSnapshot.from_api(dict(record))



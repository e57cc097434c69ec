from __future__ import annotations

import asyncio
import copy
import inspect
import json
import logging
import os
import shutil
from contextlib import AsyncExitStack
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from pydantic import TypeAdapter, ValidationError

from genmeter.models.account import Account
from genmeter.models.pending_job import PendingExternalJob
from genmeter.models.recharge import RechargeHistory

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StorageError(RuntimeError):
    pass


class LedgerTable(str, Enum):
    ACCOUNTS = "accounts"
    PENDING_JOBS = "pending_jobs"
    RECHARGE_HISTORY = "recharge_history"


# Multi-table operations always lock in this order.
LOCK_ORDER: tuple[LedgerTable, ...] = (
    LedgerTable.ACCOUNTS,
    LedgerTable.PENDING_JOBS,
    LedgerTable.RECHARGE_HISTORY,
)


@dataclass(frozen=True)
class TableSpec:
    filename: str
    adapter: TypeAdapter
    empty: Callable[[], Any]
    keep_backup: bool


TABLE_SPECS: dict[LedgerTable, TableSpec] = {
    LedgerTable.ACCOUNTS: TableSpec(
        filename="users_data.json",
        adapter=TypeAdapter(dict[str, Account]),
        empty=dict,
        keep_backup=True,
    ),
    LedgerTable.PENDING_JOBS: TableSpec(
        filename="pending_jobs.json",
        adapter=TypeAdapter(dict[str, PendingExternalJob]),
        empty=dict,
        keep_backup=True,
    ),
    LedgerTable.RECHARGE_HISTORY: TableSpec(
        filename="recharge_history.json",
        adapter=TypeAdapter(RechargeHistory),
        empty=RechargeHistory,
        keep_backup=False,
    ),
}


class LedgerStore:
    """
    Durable, cached JSON tables. Each table has its own FIFO lock; a mutation
    works on a copy of the cached table which replaces the cache only after
    it has been written to disk, so a failing mutator leaves no trace.
    """

    def __init__(self, data_dir: str | Path) -> None:
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._locks: dict[LedgerTable, asyncio.Lock] = {table: asyncio.Lock() for table in LedgerTable}
        self._cache: dict[LedgerTable, Any] = {}

    def path_for(self, table: LedgerTable) -> Path:
        return self.data_dir / TABLE_SPECS[table].filename

    def backup_path_for(self, table: LedgerTable) -> Path:
        path = self.path_for(table)
        return path.with_name(path.name + ".backup")

    async def read(self, table: LedgerTable) -> Any:
        """
        Return the cached table, loading it on first access. The returned
        object is shared; callers must not mutate it outside ``with_lock``.
        """
        cached = self._cache.get(table)
        if cached is not None:
            return cached
        async with self._locks[table]:
            return await self._ensure_loaded(table)

    async def with_lock(self, table: LedgerTable, fn: Callable[[Any], T | Awaitable[T]]) -> T:
        async with self._locks[table]:
            current = await self._ensure_loaded(table)
            working = copy.deepcopy(current)
            result = fn(working)
            if inspect.isawaitable(result):
                result = await result
            await self._persist(table, working)
            self._cache[table] = working
            return result

    async def with_locks(
        self,
        tables: Iterable[LedgerTable],
        fn: Callable[[dict[LedgerTable, Any]], T | Awaitable[T]],
    ) -> T:
        ordered = sorted(set(tables), key=LOCK_ORDER.index)
        async with AsyncExitStack() as stack:
            for table in ordered:
                await stack.enter_async_context(self._locks[table])
            working: dict[LedgerTable, Any] = {}
            for table in ordered:
                working[table] = copy.deepcopy(await self._ensure_loaded(table))
            result = fn(working)
            if inspect.isawaitable(result):
                result = await result
            written: list[LedgerTable] = []
            try:
                for table in ordered:
                    await self._persist(table, working[table])
                    written.append(table)
            except StorageError:
                await self._restore(written)
                raise
            for table in ordered:
                self._cache[table] = working[table]
            return result

    def invalidate(self) -> None:
        """Drop every cached table so the next access reloads from disk."""
        self._cache.clear()

    async def _restore(self, tables: list[LedgerTable]) -> None:
        # Put back the cached (pre-mutation) contents of tables already written.
        for table in tables:
            try:
                await self._persist(table, self._cache[table])
            except StorageError:
                logger.error("Could not roll back ledger table %s; disk and cache differ", table.value)

    async def _ensure_loaded(self, table: LedgerTable) -> Any:
        cached = self._cache.get(table)
        if cached is None:
            cached = await asyncio.to_thread(self._load_sync, table)
            self._cache[table] = cached
        return cached

    def _load_sync(self, table: LedgerTable) -> Any:
        spec = TABLE_SPECS[table]
        path = self.path_for(table)
        backup = self.backup_path_for(table)
        if not path.exists():
            if not (spec.keep_backup and backup.exists()):
                return spec.empty()
            logger.error("Ledger table %s is missing from %s", table.value, path)
        else:
            try:
                return self._read_file(path, spec)
            except (OSError, ValueError, ValidationError):
                logger.error("Failed to read ledger table %s from %s", table.value, path, exc_info=True)

        if spec.keep_backup and backup.exists():
            try:
                data = self._read_file(backup, spec)
                logger.warning("Recovered ledger table %s from backup %s", table.value, backup)
                return data
            except (OSError, ValueError, ValidationError):
                logger.error("Backup for ledger table %s is unreadable too", table.value, exc_info=True)

        logger.error("Starting ledger table %s empty after unrecoverable read failure", table.value)
        return spec.empty()

    @staticmethod
    def _read_file(path: Path, spec: TableSpec) -> Any:
        with path.open("r", encoding="utf-8") as fh:
            raw = json.load(fh)
        return spec.adapter.validate_python(raw)

    async def _persist(self, table: LedgerTable, data: Any) -> None:
        spec = TABLE_SPECS[table]
        payload = spec.adapter.dump_python(data, mode="json")
        try:
            await asyncio.to_thread(self._write_sync, table, payload)
        except OSError as exc:
            logger.error("Failed to persist ledger table %s", table.value, exc_info=True)
            raise StorageError(f"Failed to persist {table.value}") from exc

    def _write_sync(self, table: LedgerTable, payload: Any) -> None:
        spec = TABLE_SPECS[table]
        path = self.path_for(table)
        if spec.keep_backup and path.exists():
            shutil.copyfile(path, self.backup_path_for(table))
        tmp_path = path.with_name(path.name + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as fh:
            json.dump(payload, fh, ensure_ascii=False, indent=2)
        os.replace(tmp_path, path)

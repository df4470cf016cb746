"""
Write records into a SQL destination while capturing row images for rollback
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional
import logging

from sqlalchemy import MetaData, Table, and_, delete, insert, select, update
from sqlalchemy.exc import NoSuchTableError
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import DataFormatError, SourceNotFoundError
from migration.rollback import RollbackTarget
from models.base import OperationType
from schemas.operation import Operation
from schemas.records import Record

logger = logging.getLogger(__name__)

RecordTransform = Callable[[Record], Dict[str, Any]]


class SQLLoader(RollbackTarget):
    """
    Apply records to a destination table keyed by identity columns.

    Ensures:
    - Insert when the key is new, update otherwise (idempotent re-runs)
    - Each write runs in a savepoint so one bad record never discards the
      rest of the batch
    - Every write returns an Operation with the images needed to undo it

    The loader doubles as the rollback target for the same session.
    """

    supports_transactions = True

    def __init__(
        self,
        session: AsyncSession,
        table: str,
        key_columns: Optional[List[str]] = None,
        transform: Optional[RecordTransform] = None,
        tables: Optional[Dict[str, Table]] = None
    ):
        self.db = session
        self.table_name = table
        self.key_columns = key_columns or ["id"]
        self.transform = transform
        self._tables: Dict[str, Table] = dict(tables or {})
        self._metadata = MetaData()
        self._in_transaction = False
        self.written = 0

    async def _table(self, name: str) -> Table:
        table = self._tables.get(name)
        if table is not None:
            return table

        def reflect(sync_session):
            return Table(name, self._metadata, autoload_with=sync_session.connection())

        try:
            table = await self.db.run_sync(reflect)
        except NoSuchTableError as e:
            raise SourceNotFoundError(
                f"Destination table {name} doesn't exist",
                context={"table": name},
                original_exception=e
            )
        self._tables[name] = table
        return table

    @staticmethod
    def _where(table: Table, key: Dict[str, Any]):
        return and_(*[table.c[column] == value for column, value in key.items()])

    async def _current(self, table: Table, key: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        result = await self.db.execute(select(table).where(self._where(table, key)))
        row = result.mappings().first()
        return dict(row) if row is not None else None

    def _values(self, table: Table, record: Record) -> Dict[str, Any]:
        values = self.transform(record) if self.transform else dict(record.values)
        unknown = [name for name in values if name not in table.c]
        if unknown:
            logger.debug(f"Ignoring columns not in {table.name}: {', '.join(unknown)}")
        return {name: value for name, value in values.items() if name in table.c}

    # ------------------------------------------------------------------
    # Forward writes
    # ------------------------------------------------------------------

    async def apply(self, record: Record) -> Operation:
        """
        Insert or update one record.

        Returns:
            Operation describing the write

        Raises:
            DataFormatError: A key column is missing from the record
            SourceNotFoundError: The destination table does not exist
        """
        table = await self._table(self.table_name)
        values = self._values(table, record)

        key = {column: values.get(column) for column in self.key_columns}
        missing = [column for column, value in key.items() if value in (None, "")]
        if missing:
            raise DataFormatError(
                "Invalid format: record is missing key columns",
                context={"table": self.table_name, "missing": ", ".join(missing), **record.describe()}
            )

        async with self.db.begin_nested():
            existing = await self._current(table, key)
            if existing is None:
                await self.db.execute(insert(table).values(**values))
                operation = Operation(type=OperationType.INSERT, target=self.table_name, key=key, after=values)
            else:
                changes = {name: value for name, value in values.items() if name not in key}
                if changes:
                    await self.db.execute(update(table).where(self._where(table, key)).values(**changes))
                operation = Operation(
                    type=OperationType.UPDATE,
                    target=self.table_name,
                    key=key,
                    before=existing,
                    after={**existing, **changes},
                )

        self.written += 1
        return operation

    async def __call__(self, record: Record) -> Operation:
        return await self.apply(record)

    async def delete(self, key: Dict[str, Any], table_name: Optional[str] = None) -> Optional[Operation]:
        """Delete one row, capturing its before-image; None if it does not exist"""
        name = table_name or self.table_name
        table = await self._table(name)

        async with self.db.begin_nested():
            existing = await self._current(table, key)
            if existing is None:
                logger.debug(f"Nothing to delete in {name} for {key}")
                return None
            await self.db.execute(delete(table).where(self._where(table, key)))

        return Operation(type=OperationType.DELETE, target=name, key=key, before=existing)

    async def flush(self):
        """Commit writes of the current batch"""
        await self.db.commit()
        logger.debug(f"Committed writes to {self.table_name} ({self.written} total)")

    # ------------------------------------------------------------------
    # Rollback target
    # ------------------------------------------------------------------

    async def _run(self, statement):
        try:
            await self.db.execute(statement)
            if not self._in_transaction:
                await self.db.commit()
        except Exception:
            if not self._in_transaction:
                await self.db.rollback()
            raise

    async def insert_row(self, target: str, row: Dict[str, Any]):
        table = await self._table(target)
        await self._run(insert(table).values(**{k: v for k, v in row.items() if k in table.c}))

    async def update_row(self, target: str, key: Dict[str, Any], values: Dict[str, Any]):
        table = await self._table(target)
        changes = {k: v for k, v in values.items() if k in table.c and k not in key}
        if changes:
            await self._run(update(table).where(self._where(table, key)).values(**changes))

    async def delete_row(self, target: str, key: Dict[str, Any]):
        table = await self._table(target)
        await self._run(delete(table).where(self._where(table, key)))

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Commit everything applied inside the block, or nothing"""
        self._in_transaction = True
        try:
            yield
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        finally:
            self._in_transaction = False

"""Periodic replacement of the ``sponsorTimes`` table from a CSV dump."""

from __future__ import annotations

import asyncio
import csv
import itertools
import logging
import threading
import time
from collections.abc import Iterator
from datetime import timedelta
from pathlib import Path
from typing import IO, Any

from sqlalchemy import Column, Float, MetaData, Table, Text, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .store import COLUMNS, TABLE_NAME

log = logging.getLogger(__name__)

TEMP_TABLE_NAME = "sponsorTimesTemp"
_BATCH_SIZE = 10_000


class ImportError_(Exception):
    """Raised when the CSV dump cannot be loaded into the database."""


def _seconds(value: timedelta | float) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def _table(name: str, metadata: MetaData) -> Table:
    return Table(
        name,
        metadata,
        *(Column(column, column_type(), nullable=False) for column, column_type in COLUMNS),
    )


def _convert(record: dict[str, Any], line: int) -> dict[str, Any]:
    row: dict[str, Any] = {}
    for name, column_type in COLUMNS:
        raw = record.get(name)
        raw = "" if raw is None else raw
        if column_type is Text:
            row[name] = raw
            continue
        convert = float if column_type is Float else int
        if raw == "":
            row[name] = convert(0)
            continue
        try:
            row[name] = convert(raw)
        except ValueError:
            raise ImportError_(
                f"line {line}: column {name!r} has invalid value {raw!r}"
            ) from None
    return row


def _records(handle: IO[str]) -> Iterator[dict[str, Any]]:
    reader = csv.DictReader(handle)
    header = reader.fieldnames or []
    missing = [name for name, _ in COLUMNS if name not in header]
    if missing:
        raise ImportError_(f"CSV header lacks columns: {', '.join(missing)}")
    for record in reader:
        yield _convert(record, reader.line_num)


def _batches(records: Iterator[dict[str, Any]]) -> Iterator[list[dict[str, Any]]]:
    while batch := list(itertools.islice(records, _BATCH_SIZE)):
        yield batch


class CsvImporter:
    """Loads the CSV dump into the database whenever the file changes.

    ``last_update`` holds the modification time of the file last imported,
    or ``None`` before the first import.
    """

    def __init__(
        self,
        engine: Engine,
        csv_path: str | Path,
        file_check_interval: timedelta | float,
    ) -> None:
        self.engine = engine
        self.csv_path = Path(csv_path)
        self.file_check_interval = _seconds(file_check_interval)
        self.last_update: float | None = None
        self._lock = threading.Lock()

    def _mtime(self) -> float | None:
        try:
            return self.csv_path.stat().st_mtime
        except OSError:
            return None

    def _due(self, now: float) -> bool:
        if not self.csv_path.exists():
            return False
        return self.last_update is None or now - self.last_update > self.file_check_interval

    def _modified(self) -> bool:
        mtime = self._mtime()
        if mtime is None:
            return False
        return self.last_update is None or mtime > self.last_update

    def needs_import(self, now: float | None = None) -> bool:
        """Whether the file is due for a look at ``now`` and has changed since the last import."""
        now = time.time() if now is None else now
        return self._due(now) and self._modified()

    def import_csv(self) -> int:
        """Replace the table with the file's contents; return the number of rows loaded."""
        try:
            mtime = self.csv_path.stat().st_mtime
        except OSError as exc:
            raise ImportError_(f"cannot read {self.csv_path}: {exc}") from exc

        start = time.perf_counter()
        log.info("Importing database...")

        metadata = MetaData()
        temp = _table(TEMP_TABLE_NAME, metadata)
        live = _table(TABLE_NAME, metadata)
        count = 0
        try:
            with self.engine.begin() as connection, self.csv_path.open(
                newline="", encoding="utf-8"
            ) as handle:
                temp.drop(connection, checkfirst=True)
                temp.create(connection)
                for batch in _batches(_records(handle)):
                    connection.execute(temp.insert(), batch)
                    count += len(batch)
                live.drop(connection, checkfirst=True)
                connection.execute(
                    text(f'ALTER TABLE "{TEMP_TABLE_NAME}" RENAME TO "{TABLE_NAME}"')
                )
        except (SQLAlchemyError, OSError, UnicodeDecodeError, csv.Error) as exc:
            raise ImportError_(f"Failed to import database: {exc}") from exc

        log.info("Imported database in %dms", int((time.perf_counter() - start) * 1000))
        self._vacuum()
        self.last_update = mtime
        return count

    def _vacuum(self) -> None:
        if self.engine.dialect.name == "postgresql":
            statement = f'VACUUM "{TABLE_NAME}"'
        else:
            statement = "VACUUM"
        try:
            with self.engine.connect() as connection:
                connection = connection.execution_options(isolation_level="AUTOCOMMIT")
                connection.execute(text(statement))
        except SQLAlchemyError:
            log.exception("Failed to vacuum database")

    def check(self, now: float | None = None) -> bool:
        """Import the file if needed; return whether it was due for a look."""
        now = time.time() if now is None else now
        with self._lock:
            if not self._due(now):
                return False
            if self._modified():
                try:
                    self.import_csv()
                except ImportError_:
                    log.exception("Failed to import database")
            return True

    async def run(self, check_interval: timedelta | float) -> None:
        """Check the file every ``check_interval`` until cancelled."""
        period = _seconds(check_interval)
        while True:
            looked = await asyncio.to_thread(self.check, time.time())
            if looked:
                await asyncio.sleep(self.file_check_interval)
            await asyncio.sleep(period)
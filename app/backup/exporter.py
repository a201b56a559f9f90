"""
Snapshot exporter - the only component that reads the finance data store.

Workflow:
1. Read every table of the store inside one connection
2. Write the rows to snapshot.json in a private temporary directory
3. Pack the snapshot into an archive
4. Hand the archive to the storage backend
5. Remove the temporary directory

Either a complete artifact ends up at the returned destination or an
ExportError is raised and nothing new is left in storage.
"""

import os
import json
import base64
import shutil
import logging
import tempfile
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import MetaData, create_engine, select
from sqlalchemy.exc import SQLAlchemyError

from .compression import (
    create_archive,
    generate_archive_basename,
    get_archive_size,
    validate_format,
    CompressionError
)
from .storage import StorageError

logger = logging.getLogger(__name__)


class ExportError(Exception):
    """Raised when a snapshot of the data store could not be produced."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


@dataclass(frozen=True)
class ExportResult:
    destination: str
    size_bytes: int


def _json_default(value):
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode('ascii')
    return str(value)


class DatabaseExporter:
    """
    Exports a full snapshot of a SQLAlchemy-reachable database.
    """

    SNAPSHOT_FILENAME = 'snapshot.json'

    def __init__(
        self,
        engine,
        storage,
        temp_dir: Optional[str] = None,
        compression_format: str = 'tar.gz',
        exclude_tables: Iterable[str] = ()
    ):
        """
        Initialize exporter.

        Args:
            engine: SQLAlchemy engine for the finance data store
            storage: Storage backend with store(path, tier) -> destination
            temp_dir: Parent directory for staging files (default: system temp)
            compression_format: Archive format (see compression.EXTENSIONS)
            exclude_tables: Table names left out of the snapshot
        """
        self.engine = engine
        self.storage = storage
        self.temp_dir = temp_dir
        self.compression_format = validate_format(compression_format)
        self.exclude_tables = set(exclude_tables)

    @classmethod
    def from_url(cls, database_url: str, storage, **kwargs) -> 'DatabaseExporter':
        return cls(create_engine(database_url), storage, **kwargs)

    def create_backup(self, tier: str) -> ExportResult:
        """
        Produce one full snapshot and place it in storage.

        Args:
            tier: Backup tier, used for naming and storage layout

        Returns:
            ExportResult with destination and archive size

        Raises:
            ExportError: If any step fails
        """
        if self.temp_dir:
            os.makedirs(self.temp_dir, exist_ok=True)

        staging_dir = tempfile.mkdtemp(prefix='finance_backup_', dir=self.temp_dir)

        try:
            snapshot_path = os.path.join(staging_dir, self.SNAPSHOT_FILENAME)
            table_count, row_count = self._dump(snapshot_path)
            logger.debug(f"Dumped {row_count} rows from {table_count} tables for {tier} backup")

            archive_base = os.path.join(staging_dir, generate_archive_basename(tier))
            archive_path = create_archive([snapshot_path], archive_base, self.compression_format)
            size_bytes = get_archive_size(archive_path)

            destination = self.storage.store(archive_path, tier)
            return ExportResult(destination=destination, size_bytes=size_bytes)

        except SQLAlchemyError as e:
            raise ExportError(f"Failed to read data store: {e}") from e
        except (CompressionError, StorageError) as e:
            raise ExportError(str(e)) from e
        except OSError as e:
            raise ExportError(f"Failed to write snapshot: {e}") from e

        finally:
            shutil.rmtree(staging_dir, ignore_errors=True)

    def _dump(self, snapshot_path: str):
        """
        Write all rows of all tables to a JSON file.

        Returns:
            Tuple of (table_count, row_count)
        """
        metadata = MetaData()
        tables = {}
        row_count = 0

        with self.engine.connect() as conn:
            metadata.reflect(bind=conn)

            for table in metadata.sorted_tables:
                if table.name in self.exclude_tables:
                    continue
                rows = [dict(row._mapping) for row in conn.execute(select(table))]
                tables[table.name] = rows
                row_count += len(rows)

        snapshot = {
            'created_at': datetime.now(timezone.utc).isoformat(),
            'tables': tables
        }

        with open(snapshot_path, 'w', encoding='utf-8') as f:
            json.dump(snapshot, f, default=_json_default)

        return len(tables), row_count

"""
Record set export: pull every row of one table and serialize it as a JSON array.

SqlRecordStore is the relational collaborator (SQLAlchemy Core, any supported
database); RecordSetExporter turns its rows into the bytes of one archive entry.
"""

import base64
import json
import logging
import textwrap
import uuid
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, Iterator, List

from sqlalchemy import MetaData, Table, create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError

logger = logging.getLogger(__name__)


class SourceUnavailable(Exception):
    """Raised when a record set cannot be read."""
    pass


class SqlRecordStore:
    """
    Reads whole tables from a relational database.

    Tables are reflected at read time, so the store needs no model definitions
    for the tenant schema.
    """

    def __init__(self, engine: Engine, owns_engine: bool = False):
        """
        Args:
            engine: SQLAlchemy engine for the tenant database
            owns_engine: Dispose the engine on close() (engines created by from_url)
        """
        self.engine = engine
        self._owns_engine = owns_engine

    @classmethod
    def from_url(cls, url: str) -> 'SqlRecordStore':
        return cls(create_engine(url), owns_engine=True)

    def select_all(self, name: str) -> List[Dict[str, Any]]:
        """
        Fetch every row of a table, ordered by primary key when it has one.

        Raises:
            SourceUnavailable: If the table does not exist or the query fails
        """
        try:
            table = Table(name, MetaData(), autoload_with=self.engine)
            query = select(table)
            if table.primary_key.columns:
                query = query.order_by(*table.primary_key.columns)

            with self.engine.connect() as conn:
                return [dict(row) for row in conn.execute(query).mappings()]

        except NoSuchTableError:
            raise SourceUnavailable(f"Record set does not exist: {name}")
        except SQLAlchemyError as e:
            raise SourceUnavailable(f"Failed to read record set {name}: {e}")

    def close(self):
        if self._owns_engine:
            self.engine.dispose()


def _json_default(value: Any) -> Any:
    """Render column types the json module does not know."""
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, (Decimal, uuid.UUID)):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode('ascii')
    return str(value)


def iter_json_array(records: List[Dict[str, Any]]) -> Iterator[bytes]:
    """
    Encode records as a pretty-printed JSON array, one record per chunk.

    The output is the document ``json.dumps(records, indent=2, ensure_ascii=False)``
    would produce, encoded as UTF-8, without building it as one string.
    """
    if not records:
        yield b'[]'
        return

    yield b'['
    for index, record in enumerate(records):
        body = json.dumps(record, indent=2, ensure_ascii=False, default=_json_default)
        separator = ',\n' if index else '\n'
        yield (separator + textwrap.indent(body, '  ')).encode('utf-8')
    yield b'\n]'


class ExportedRecordSet:
    """Rows of one record set, iterable as the bytes of its JSON entry."""

    def __init__(self, name: str, records: List[Dict[str, Any]]):
        self.name = name
        self.records = records

    @property
    def record_count(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[bytes]:
        return iter_json_array(self.records)


class RecordSetExporter:
    """Exports one record set at a time from a record store."""

    def __init__(self, store):
        self.store = store

    def export(self, name: str) -> ExportedRecordSet:
        """
        Read a record set and return its serialized content.

        All rows are fetched before this returns, so a failing source is reported
        here and never half-way through writing an archive entry.

        Raises:
            SourceUnavailable: If the record set cannot be read
        """
        records = self.store.select_all(name)
        logger.debug(f"Fetched {len(records)} records from {name}")
        return ExportedRecordSet(name, records)

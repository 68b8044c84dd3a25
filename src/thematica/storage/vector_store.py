"""Vector storage using LanceDB for the semantic result cache."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from pathlib import Path

import lancedb
import pyarrow as pa


@dataclass
class CacheHit:
    entry_id: str
    key: str
    payload: dict
    similarity: float
    created_at: float
    expires_at: float


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class CacheVectorStore:
    """LanceDB table of (vector, key, JSON payload) rows with expiry timestamps."""

    def __init__(self, db_path: Path, dims: int, table_name: str = "semantic_cache") -> None:
        self._db_path = db_path
        self._dims = dims
        self.table_name = table_name
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = lancedb.connect(str(db_path))
        self._table: lancedb.table.Table | None = None

    @property
    def dims(self) -> int:
        return self._dims

    def _schema(self) -> pa.Schema:
        return pa.schema(
            [
                pa.field("vector", pa.list_(pa.float32(), self._dims)),
                pa.field("entry_id", pa.utf8()),
                pa.field("key", pa.utf8()),
                pa.field("payload", pa.utf8()),
                pa.field("created_at", pa.float64()),
                pa.field("expires_at", pa.float64()),
            ]
        )

    def init_table(self) -> None:
        """Create the cache table if it doesn't exist, or open it."""
        existing = self._db.list_tables().tables
        if self.table_name in existing:
            self._table = self._db.open_table(self.table_name)
        else:
            self._table = self._db.create_table(self.table_name, schema=self._schema())

    def _get_table(self) -> lancedb.table.Table:
        if self._table is None:
            self.init_table()
        return self._table  # type: ignore[return-value]

    def add(self, key: str, vector: list[float], payload: dict, created_at: float, expires_at: float) -> str:
        entry_id = uuid.uuid4().hex
        self._get_table().add([
            {
                "vector": [float(v) for v in vector],
                "entry_id": entry_id,
                "key": key,
                "payload": json.dumps(payload),
                "created_at": created_at,
                "expires_at": expires_at,
            }
        ])
        return entry_id

    def search(
        self, key: str, query_vector: list[float], limit: int = 5, now: float | None = None,
    ) -> list[CacheHit]:
        """Nearest rows under ``key`` by cosine distance, most similar first.

        With ``now``, rows that expired at or before it are filtered out before
        the nearest-neighbour limit applies.
        """
        table = self._get_table()
        if table.count_rows() == 0:
            return []
        where = f"key = {_quote(key)}"
        if now is not None:
            where += f" AND expires_at > {float(now)!r}"
        results = (
            table.search(query_vector)
            .distance_type("cosine")
            .where(where, prefilter=True)
            .limit(limit)
            .to_list()
        )
        return [
            CacheHit(
                entry_id=r["entry_id"],
                key=r["key"],
                payload=json.loads(r["payload"]),
                similarity=1.0 - float(r["_distance"]),
                created_at=float(r["created_at"]),
                expires_at=float(r["expires_at"]),
            )
            for r in results
        ]

    def delete_expired(self, now: float) -> int:
        table = self._get_table()
        before = table.count_rows()
        table.delete(f"expires_at <= {float(now)!r}")
        return before - table.count_rows()

    def delete_ids(self, entry_ids: list[str]) -> None:
        if not entry_ids:
            return
        ids = ", ".join(_quote(e) for e in entry_ids)
        self._get_table().delete(f"entry_id IN ({ids})")

    def oldest_ids(self, n: int) -> list[str]:
        """Return the ``n`` oldest entry ids by creation time."""
        if n <= 0:
            return []
        rows = self._get_table().to_arrow().select(["entry_id", "created_at"])
        rows = rows.sort_by("created_at")
        return rows.column("entry_id").to_pylist()[:n]

    def clear(self) -> None:
        if self.table_name in self._db.list_tables().tables:
            self._db.drop_table(self.table_name)
        self._table = None

    def count(self) -> int:
        """Return the number of rows in the table."""
        return self._get_table().count_rows()

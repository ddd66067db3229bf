import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)


@dataclass
class ColumnInfo:
    name: str
    type: str
    nullable: bool
    primary_key: bool


@dataclass
class TableInfo:
    name: str
    columns: List[ColumnInfo] = field(default_factory=list)
    foreign_keys: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "columns": [vars(c) for c in self.columns],
            "foreign_keys": self.foreign_keys,
        }


@dataclass
class SchemaCatalog:
    """Reflected description of the tables the agent may read."""

    tables: Dict[str, TableInfo] = field(default_factory=dict)

    def table_names(self) -> List[str]:
        return sorted(self.tables)

    def describe(self, table: str) -> TableInfo:
        """Raises KeyError for tables outside the catalog."""
        return self.tables[table.lower()]

    def to_prompt(self) -> str:
        """
        Compact schema text for prompts.

        Example:
            daily_changes_snapshot(id INTEGER PK, snapshot_date DATE, entity VARCHAR, ...)
        """
        lines = []
        for name in self.table_names():
            info = self.tables[name]
            cols = ", ".join(
                f"{c.name} {c.type}{' PK' if c.primary_key else ''}"
                for c in info.columns
            )
            lines.append(f"{name}({cols})")
            for fk in info.foreign_keys:
                lines.append(
                    f"  {name}.{','.join(fk['columns'])} -> "
                    f"{fk['referred_table']}.{','.join(fk['referred_columns'])}"
                )
        return "\n".join(lines)


def _reflect(sync_conn, wanted: List[str]) -> Dict[str, TableInfo]:
    inspector = inspect(sync_conn)
    existing = {name.lower(): name for name in inspector.get_table_names()}

    tables: Dict[str, TableInfo] = {}
    for table in wanted:
        actual = existing.get(table.lower())
        if actual is None:
            logger.warning(f"Queryable table '{table}' does not exist, skipping")
            continue

        pk = set(
            inspector.get_pk_constraint(actual).get("constrained_columns") or []
        )
        columns = [
            ColumnInfo(
                name=col["name"],
                type=str(col["type"]),
                nullable=bool(col.get("nullable", True)),
                primary_key=col["name"] in pk,
            )
            for col in inspector.get_columns(actual)
        ]
        foreign_keys = [
            {
                "columns": fk["constrained_columns"],
                "referred_table": fk["referred_table"],
                "referred_columns": fk["referred_columns"],
            }
            for fk in inspector.get_foreign_keys(actual)
            # Only expose relationships inside the catalog
            if fk["referred_table"].lower() in {w.lower() for w in wanted}
        ]
        tables[actual.lower()] = TableInfo(
            name=actual, columns=columns, foreign_keys=foreign_keys
        )
    return tables


async def load_catalog(engine: AsyncEngine, tables: Iterable[str]) -> SchemaCatalog:
    """Reflect the queryable tables from the live database."""
    wanted = list(tables)
    async with engine.connect() as conn:
        reflected = await conn.run_sync(_reflect, wanted)
    return SchemaCatalog(tables=reflected)

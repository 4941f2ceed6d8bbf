"""
Offline schema export for the ledger's persisted models.

The logical schema is built from each model's `db_schema()`; the renderers
turn it into PostgreSQL/MySQL DDL (tables plus the secondary indexes the
Mongo store creates) or a JSON document usable as a starting point for
MongoDB collection validators.

  credit-ledger-schema --backend sql --dialect postgres > ledger.sql
  credit-ledger-schema --backend nosql
"""

from __future__ import annotations

import argparse
import json
from typing import Any, Dict, List, Optional, Type

from .models.base import DBSerializableModel
from .models.grant import CreditGrant
from .models.ledger import LedgerEntry
from .models.usage import UsageRecord
from .models.user import UserAccount


# Order matters for the DDL: accounts first, then what references them
LEDGER_MODELS: List[Type[DBSerializableModel]] = [
    UserAccount,
    CreditGrant,
    UsageRecord,
    LedgerEntry,
]

_SQL_TYPES: Dict[str, Dict[str, str]] = {
    "postgres": {
        "integer": "BIGINT",
        "number": "DOUBLE PRECISION",
        "boolean": "BOOLEAN",
        "string": "TEXT",
        "datetime": "TIMESTAMPTZ",
        "json": "JSONB",
        "array": "JSONB",
    },
    "mysql": {
        "integer": "BIGINT",
        "number": "DOUBLE",
        "boolean": "BOOLEAN",
        "string": "TEXT",
        "datetime": "TIMESTAMP",
        "json": "JSON",
        "array": "JSON",
    },
}


def generate_logical_schema() -> Dict[str, Any]:
    """Every persisted ledger model, keyed by collection name."""
    return {model.collection_name: model.db_schema() for model in LEDGER_MODELS}


def sql_type(logical_type: str, dialect: str = "postgres") -> str:
    types = _SQL_TYPES.get(dialect, _SQL_TYPES["postgres"])
    return types.get(logical_type.lower(), "TEXT")


def _column_definitions(table: Dict[str, Any], dialect: str) -> List[str]:
    pk = table.get("primary_key") or "id"
    columns: List[str] = []
    for name, meta in table["properties"].items():
        # Only Optional fields are nullable; the key never is
        null = "NULL" if meta.get("nullable") and name != pk else "NOT NULL"
        columns.append(f'    "{name}" {sql_type(meta["type"], dialect)} {null}')
    columns.append(f'    PRIMARY KEY ("{pk}")')
    return columns


def _index_statements(table_name: str, indexes: List[List[str]]) -> List[str]:
    statements: List[str] = []
    for fields in indexes:
        index_name = f"ix_{table_name}_" + "_".join(fields)
        cols = ", ".join(f'"{c}"' for c in fields)
        statements.append(
            f'CREATE INDEX IF NOT EXISTS "{index_name}" ON "{table_name}" ({cols});'
        )
    return statements


def render_sql_ddl(schema: Dict[str, Any], dialect: str = "postgres") -> str:
    blocks: List[str] = []
    for table_name, table in schema.items():
        body = ",\n".join(_column_definitions(table, dialect))
        statements = [f'CREATE TABLE IF NOT EXISTS "{table_name}" (\n{body}\n);']
        statements.extend(_index_statements(table_name, table.get("indexes", [])))
        blocks.append("\n".join(statements) + "\n")
    return "\n".join(blocks)


def render_nosql_schema(schema: Dict[str, Any]) -> str:
    return json.dumps(schema, indent=2, default=str)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="credit-ledger-schema",
        description="Export the credit ledger's storage schema.",
    )
    parser.add_argument("--backend", choices=["sql", "nosql"], required=True)
    parser.add_argument(
        "--dialect",
        choices=sorted(_SQL_TYPES),
        default="postgres",
        help="SQL dialect for --backend sql",
    )
    args = parser.parse_args(argv)

    schema = generate_logical_schema()
    if args.backend == "sql":
        print(render_sql_ddl(schema, dialect=args.dialect))
    else:
        print(render_nosql_schema(schema))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

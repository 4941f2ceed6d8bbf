from __future__ import annotations

import asyncio
import json

import pytest

from credit_ledger import cli, schema_generator
from credit_ledger.cache.base import BalanceProjection
from credit_ledger.config import CreditLedgerSettings
from credit_ledger.models.grant import CreditGrant, GrantSourceType
from credit_ledger.models.user import UserAccount
from credit_ledger.schema_generator import (
    generate_logical_schema,
    render_nosql_schema,
    render_sql_ddl,
    sql_type,
)


def test_logical_schema_covers_persisted_models():
    schema = generate_logical_schema()
    assert set(schema) == {
        "credit_users",
        "credit_grants",
        "credit_usage_history",
        "credit_ledger_events",
    }

    grants = schema["credit_grants"]
    assert grants["properties"]["expires_at"] == {
        "type": "datetime",
        "nullable": True,
        "description": "Null means the grant never expires.",
    }
    assert grants["properties"]["source_type"]["type"] == "string"
    assert "remaining_amount" in grants["required"]
    assert ["user_id", "remaining_amount"] in grants["indexes"]

    assert json.loads(render_nosql_schema(schema))["credit_users"]["primary_key"] == "id"


def test_sql_ddl_renders_tables_and_indexes():
    ddl = render_sql_ddl(generate_logical_schema())
    assert 'CREATE TABLE IF NOT EXISTS "credit_grants"' in ddl
    assert '"expires_at" TIMESTAMPTZ NULL' in ddl
    assert '"remaining_amount" BIGINT NOT NULL' in ddl
    assert '"metadata" JSONB NOT NULL' in ddl
    assert (
        'CREATE INDEX IF NOT EXISTS "ix_credit_usage_history_user_id_created_at" '
        'ON "credit_usage_history" ("user_id", "created_at");'
    ) in ddl


def test_mysql_dialect_and_unknown_types():
    ddl = render_sql_ddl(generate_logical_schema(), dialect="mysql")
    assert '"expires_at" TIMESTAMP NULL' in ddl
    assert '"metadata" JSON NOT NULL' in ddl
    assert '"id" TEXT NOT NULL' in ddl
    assert "TIMESTAMPTZ" not in ddl
    assert sql_type("decimal", "mysql") == "TEXT"


def test_schema_command_prints_the_chosen_backend(capsys):
    assert schema_generator.main(["--backend", "nosql"]) == 0
    assert "credit_grants" in json.loads(capsys.readouterr().out)

    assert schema_generator.main(["--backend", "sql", "--dialect", "mysql"]) == 0
    assert 'CREATE TABLE IF NOT EXISTS "credit_users"' in capsys.readouterr().out


def test_settings_read_prefixed_environment(monkeypatch):
    monkeypatch.setenv("CREDIT_MONGO_DB", "ledger_test")
    monkeypatch.setenv("CREDIT_USAGE_HISTORY_LIMIT", "7")
    config = CreditLedgerSettings()
    assert config.mongo_db == "ledger_test"
    assert config.usage_history_limit == 7


@pytest.mark.asyncio
async def test_balance_projection_ignores_foreign_values(cache):
    balances = BalanceProjection(cache, ttl_seconds=60)
    await cache.set(BalanceProjection.key("user-1"), "not a number")
    assert await balances.get("user-1") is None

    await balances.publish("user-1", 12)
    assert await balances.get("user-1") == 12
    await balances.invalidate("user-1")
    assert await balances.get("user-1") is None


def test_cli_audit_exits_non_zero_on_drift(monkeypatch, service, db, capsys):
    async def seed():
        await db.add_user(UserAccount(id="user-1", credits_balance=9))
        await db.add_grant(
            CreditGrant(
                user_id="user-1",
                amount=5,
                remaining_amount=5,
                source_type=GrantSourceType.PURCHASED,
            )
        )

    asyncio.run(seed())
    monkeypatch.setattr(cli, "create_credit_service", lambda: service)

    assert cli.main(["audit"]) == 1
    assert "DRIFT +4" in capsys.readouterr().out


def test_cli_expire_prints_summary(monkeypatch, service, capsys):
    monkeypatch.setattr(cli, "create_credit_service", lambda: service)

    assert cli.main(["expire", "--now", "2025-03-01T00:00:00"]) == 0
    assert "expired 0 grants" in capsys.readouterr().out

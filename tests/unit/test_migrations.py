"""Tests for the fraud_rules migration and ORM model."""

import importlib.util
from pathlib import Path
from unittest.mock import MagicMock

from src.db.models import FraudRuleRecord

MIGRATION = (
    Path(__file__).parents[2] / "src" / "db" / "migrations" / "versions" / "001_create_fraud_rules.py"
)


def _load_migration():
    spec = importlib.util.spec_from_file_location("migration_001", MIGRATION)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestFraudRulesMigration:
    def test_is_first_revision(self):
        migration = _load_migration()
        assert migration.revision == "001"
        assert migration.down_revision is None

    def test_upgrade_matches_orm_columns(self, monkeypatch):
        migration = _load_migration()
        op = MagicMock()
        monkeypatch.setattr(migration, "op", op)

        migration.upgrade()

        table_name, *columns = op.create_table.call_args.args
        assert table_name == FraudRuleRecord.__tablename__
        assert {c.name for c in columns} == set(FraudRuleRecord.__table__.columns.keys())
        unique = [c for c in op.create_index.call_args_list if c.kwargs.get("unique")]
        assert unique[0].args[2] == ["rule_id"]

    def test_downgrade_drops_table(self, monkeypatch):
        migration = _load_migration()
        op = MagicMock()
        monkeypatch.setattr(migration, "op", op)

        migration.downgrade()

        op.drop_table.assert_called_once_with("fraud_rules")

"""Strategy configuration store: one active row per table, versioned history."""
import pytest
from sqlalchemy import create_mock_engine, func, select

from table_reorg.errors import NotFoundError, ValidationError
from table_reorg.models.tables import StrategyConfig


def active_rows(session_factory, target):
    with session_factory() as session:
        return session.scalar(
            select(func.count()).select_from(StrategyConfig)
            .where(StrategyConfig.target_object == target, StrategyConfig.is_active.is_(True))
        )


class TestStrategyConfigStore:
    def test_create_and_get(self, config_store):
        rec = config_store.create("sales", "interval", partition_column="sale_date",
                                  interval_expression="NUMTOYMINTERVAL(1,'MONTH')", user="dba")
        assert rec.target_object == "SALES"
        assert rec.strategy_type == "INTERVAL"
        assert rec.partition_column == "SALE_DATE"
        assert rec.interval_expression == "1 MONTH"
        assert rec.version == 1
        assert rec.created_by == "dba"
        assert config_store.get("SALES") == rec

    def test_get_is_repeatable(self, config_store):
        config_store.create("SALES", "RANGE", partition_column="SALE_DATE")
        assert config_store.get("SALES") == config_store.get("SALES")

    def test_create_replaces_active_row(self, config_store, session_factory):
        config_store.create("SALES", "RANGE", partition_column="SALE_DATE")
        rec = config_store.create("SALES", "HASH", partition_column="SALE_ID")
        assert rec.version == 2
        assert config_store.get("SALES").strategy_type == "HASH"
        assert active_rows(session_factory, "SALES") == 1
        assert [r.version for r in config_store.history("SALES")] == [2, 1]
        assert [r.is_active for r in config_store.history("SALES")] == [True, False]

    def test_partial_update_keeps_other_fields(self, config_store):
        config_store.create("SALES", "INTERVAL", partition_column="SALE_DATE", interval_expression="1 MONTH")
        rec = config_store.update("SALES", tablespace="fast_ts", retention_days=None, user="ops")
        assert rec.tablespace == "FAST_TS"
        assert rec.partition_column == "SALE_DATE"
        assert rec.interval_expression == "1 MONTH"
        assert rec.retention_days == 90
        assert rec.updated_by == "ops"
        assert rec.version == 2

    def test_update_without_active_config(self, config_store):
        with pytest.raises(NotFoundError):
            config_store.update("SALES", tablespace="FAST_TS")

    def test_update_rejects_unknown_fields(self, config_store):
        config_store.create("SALES", "RANGE", partition_column="SALE_DATE")
        with pytest.raises(ValidationError):
            config_store.update("SALES", owner="someone")

    def test_deactivate(self, config_store, session_factory):
        config_store.create("SALES", "RANGE", partition_column="SALE_DATE")
        assert config_store.deactivate("SALES")
        assert not config_store.deactivate("SALES")
        assert active_rows(session_factory, "SALES") == 0
        with pytest.raises(NotFoundError):
            config_store.get("SALES")
        assert len(config_store.history("SALES")) == 1

    @pytest.mark.parametrize("kwargs", [
        {"strategy_type": "ROUND_ROBIN"},
        {"strategy_type": "RANGE", "partition_column": "sale date"},
        {"strategy_type": "RANGE", "subpartition_type": "SPIRAL"},
        {"strategy_type": "INTERVAL", "interval_expression": "sometimes"},
        {"strategy_type": "RANGE", "retention_days": 0},
    ])
    def test_invalid_values(self, config_store, kwargs):
        with pytest.raises(ValidationError):
            config_store.create("SALES", **kwargs)

    def test_list_active(self, config_store):
        config_store.create("SALES", "RANGE", partition_column="SALE_DATE")
        config_store.create("ORDERS", "HASH", partition_column="ORDER_ID")
        config_store.create("LINES", "HASH", partition_column="LINE_ID")
        config_store.deactivate("LINES")
        assert [r.target_object for r in config_store.list_active()] == ["ORDERS", "SALES"]


def strategy_config_ddl(url):
    emitted = []
    engine = create_mock_engine(url, lambda sql, *args, **kwargs: emitted.append(str(sql.compile(dialect=engine.dialect))))
    StrategyConfig.__table__.create(engine, checkfirst=False)
    return [" ".join(s.split()) for s in emitted if "uq_strategy_config_active" in s]


class TestSingleActiveRowIndex:
    def test_oracle_gets_function_based_index(self):
        [ddl] = strategy_config_ddl("oracle+oracledb://")
        assert ddl.startswith("CREATE UNIQUE INDEX uq_strategy_config_active_fn ON strategy_config (CASE WHEN")
        assert "is_active = 1" in ddl
        assert "THEN target_object END" in ddl

    def test_postgresql_gets_partial_index(self):
        [ddl] = strategy_config_ddl("postgresql://")
        assert ddl == ("CREATE UNIQUE INDEX uq_strategy_config_active_target ON strategy_config "
                       "(target_object) WHERE is_active")

    def test_sqlite_gets_partial_index(self):
        [ddl] = strategy_config_ddl("sqlite://")
        assert ddl.endswith("(target_object) WHERE is_active = 1")

    def test_recreating_config_keeps_one_active_row(self, config_store, session_factory):
        for strategy in ("RANGE", "INTERVAL", "HASH"):
            config_store.create("SALES", strategy, partition_column="SALE_ID")
        assert active_rows(session_factory, "SALES") == 1
        assert config_store.get("SALES").version == 3

"""MigrationService wiring: planning, execution, rollback and reads."""
from datetime import date

import pytest

from table_reorg.audit import SUCCESS
from table_reorg.config import Settings
from table_reorg.errors import NotFoundError, StepExecutionError, ValidationError
from table_reorg.planner import PlanOptions
from table_reorg.statements import CreatePartitionedTable, DropPartition, GatherStatistics, StrategyType

INTERVAL = {"strategy_type": "INTERVAL", "partition_column": "SALE_DATE", "interval_expression": "1 MONTH"}


class TestPlanning:
    def test_estimate(self, make_service, sales):
        est = make_service().estimate("sales")
        assert est["parallel_degree"] == 8
        assert est["complexity"] == "HIGH"

    def test_estimate_missing_table(self, make_service):
        with pytest.raises(NotFoundError):
            make_service().estimate("NOPE")

    def test_plan_accepts_dict_and_string_strategies(self, make_service, sales):
        svc = make_service()
        assert svc.plan_migration("SALES", INTERVAL).strategy.strategy_type is StrategyType.INTERVAL
        assert svc.plan_migration("SALES", "none").strategy.strategy_type is StrategyType.NONE

    def test_option_defaults_come_from_settings(self, make_service, sales):
        plan = make_service().plan_migration("SALES", INTERVAL, {"batch_size": 500})
        reload = plan.steps[3].action
        assert reload.batch_size == 500
        assert reload.checkpoint_batches == 10
        assert "drop_backup" not in plan.step_names()

    def test_explicit_plan_options(self, make_service, sales):
        plan = make_service().plan_migration("SALES", INTERVAL, PlanOptions(keep_backup=False))
        assert "drop_backup" in plan.step_names()

    def test_hash_partition_count_defaults_from_settings(self, make_service, sales):
        settings = Settings(DATABASE_URL="sqlite://", SQL_DIALECT="oracle", DEFAULT_HASH_PARTITIONS=16)
        svc = make_service(settings=settings)
        plan = svc.plan_migration("SALES", {"strategy_type": "HASH", "partition_column": "SALE_ID"})
        assert plan.steps[2].action.scheme.hash_partitions == 16
        explicit = svc.plan_migration("SALES", {"strategy_type": "HASH", "partition_column": "SALE_ID",
                                                "hash_partitions": 2})
        assert explicit.steps[2].action.scheme.hash_partitions == 2

    def test_remove_columns_uses_declared_strategy(self, make_service, fake_db, config_store):
        fake_db.create_table("EVENTS", ["EVENT_ID", "EVENT_DATE", "PAYLOAD"], partitioning="RANGE", partitions=["P1"])
        svc = make_service()
        with pytest.raises(ValidationError):
            svc.plan_remove_columns("EVENTS", ["PAYLOAD"])
        config_store.create("EVENTS", "RANGE", partition_column="EVENT_DATE")
        plan = svc.plan_remove_columns("EVENTS", ["PAYLOAD"])
        create = plan.steps[2].action
        assert isinstance(create, CreatePartitionedTable)
        assert create.columns == ("EVENT_ID", "EVENT_DATE")

    def test_nothing_is_executed_while_planning(self, make_service, sales):
        svc = make_service()
        svc.plan_migration("SALES", INTERVAL)
        assert svc.executors == []
        assert list(svc.get_operation_history()) == []


class TestExecution:
    def test_migrate_then_rollback(self, make_service, fake_db, sales):
        svc = make_service()
        result = svc.migrate("SALES", INTERVAL)
        assert result.status == SUCCESS
        assert fake_db.tables["SALES"].partitioning == "INTERVAL"
        assert svc.get_config("SALES").partition_column == "SALE_DATE"

        [op] = list(svc.get_operation_history(target_object="SALES", operation_type="MIGRATE_STRATEGY"))
        assert [s.status for s in svc.get_operation_steps(op.operation_id)] == [SUCCESS] * 7
        backup = op.context["backup_object"]

        assert svc.rollback("SALES", backup) == SUCCESS
        restored = fake_db.tables["SALES"]
        assert restored.partitioning is None
        assert len(restored.rows) == 250
        [rollback_op] = list(svc.get_operation_history(operation_type="ROLLBACK"))
        assert rollback_op.status == SUCCESS

    def test_migrate_failure(self, make_service, sales):
        svc = make_service(fail_on=lambda s: isinstance(s, GatherStatistics))
        with pytest.raises(StepExecutionError) as info:
            svc.migrate("SALES", INTERVAL)
        assert svc.audit.get(info.value.operation_id).status == "ERROR"

    def test_migrate_planning_failure(self, make_service, sales):
        svc = make_service()
        with pytest.raises(ValidationError):
            svc.migrate("SALES", {"strategy_type": "RANGE", "partition_column": "NOPE"})
        assert list(svc.get_operation_history()) == []

    def test_partition_change(self, make_service, fake_db):
        fake_db.create_table("EVENTS", ["EVENT_ID", "EVENT_DATE"], partitioning="RANGE", partitions=["P1", "P2"])
        svc = make_service()
        result = svc.execute_plan(svc.plan_partition_change("EVENTS", DropPartition("EVENTS", "P1")))
        assert result.succeeded
        assert fake_db.tables["EVENTS"].partitions == ["P2"]

    def test_retention_cleanup_uses_declared_retention(self, make_service, fake_db, config_store):
        fake_db.create_table("EVENTS", ["EVENT_ID", "EVENT_DATE"], partitioning="RANGE",
                             partitions=["P_2022", "P_2023", "P_MAX"],
                             partition_bounds={"P_2022": date(2023, 1, 1), "P_2023": date(2024, 1, 1)})
        svc = make_service()
        with pytest.raises(ValidationError, match="retention_days is required"):
            svc.plan_retention_cleanup("EVENTS")
        config_store.create("EVENTS", "RANGE", partition_column="EVENT_DATE", retention_days=30)

        result = svc.execute_plan(svc.plan_retention_cleanup("EVENTS"))

        assert result.succeeded
        assert fake_db.tables["EVENTS"].partitions == ["P_MAX"]
        [op] = list(svc.get_operation_history(operation_type="RETENTION_CLEANUP"))
        assert op.status == SUCCESS

    def test_retention_cleanup_truncates(self, make_service, fake_db):
        table = fake_db.create_table("EVENTS", ["EVENT_ID", "EVENT_DATE"], partitioning="RANGE",
                                     partitions=["P_2022", "P_MAX"], partition_bounds={"P_2022": date(2023, 1, 1)})
        svc = make_service()
        svc.execute_plan(svc.plan_retention_cleanup("EVENTS", 30, action="TRUNCATE"))
        assert table.partitions == ["P_2022", "P_MAX"]
        assert table.truncated_partitions == ["P_2022"]

    def test_purge_audit_log(self, make_service, sales):
        svc = make_service()
        svc.execute_plan(svc.plan_statistics_refresh("SALES"))
        assert svc.purge_audit_log(30) == 0
        assert len(list(svc.get_operation_history())) == 2

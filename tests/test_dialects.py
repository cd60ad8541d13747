"""Typed statements and their Oracle / PostgreSQL renderings."""
from datetime import date, datetime, timedelta, timezone
from uuid import UUID

import pytest

from table_reorg.dialects import OracleDialect, PostgresDialect, get_dialect
from table_reorg.errors import UnsupportedOperationError, ValidationError
from table_reorg.statements import (
    AddConstraint, AddPartition, ConstraintKind, CreatePartitionedTable, CreateTableAs, DropPartition,
    GatherStatistics, InsertRange, IntervalSpec, MergePartitions, PartitionDefinition, PartitionScheme,
    SelectUpperBound, SplitPartition, StrategyType, SubpartitionScheme, SubpartitionType, TruncatePartition,
    check_identifier,
)


@pytest.fixture
def oracle():
    return OracleDialect()


@pytest.fixture
def pg():
    return PostgresDialect()


class TestIdentifiers:
    def test_normalized_to_upper_case(self):
        assert check_identifier("sales_2024") == "SALES_2024"

    @pytest.mark.parametrize("bad", [
        "",
        "1SALES",
        "SALES; DROP TABLE USERS",
        "SALES--",
        "sales\"x",
        "A" * 129,
        None,
    ])
    def test_rejects_unsafe_names(self, bad):
        with pytest.raises(ValidationError):
            check_identifier(bad)

    def test_statement_construction_validates_names(self):
        with pytest.raises(ValidationError):
            CreateTableAs("SALES_BACKUP", "SALES x WHERE 1=1")

    def test_literals_must_be_plain_values(self):
        with pytest.raises(ValidationError):
            InsertRange("T", "S", "ID", lower=object())

    def test_reserved_word_is_quoted(self, oracle, pg):
        assert oracle.ident("ORDER") == '"ORDER"'
        assert pg.ident("ORDER") == '"order"'
        assert oracle.ident("SALES") == "sales"

    def test_string_literals_escape_quotes(self, oracle):
        assert oracle.literal("O'Brien") == "'O''Brien'"
        assert oracle.literal(date(2024, 1, 1)) == "DATE '2024-01-01'"


class TestLiterals:
    def test_timestamp_keeps_microseconds(self, oracle, pg):
        ts = datetime(2024, 1, 1, 12, 0, 0, 500000)
        assert oracle.literal(ts) == "TIMESTAMP '2024-01-01 12:00:00.500000'"
        assert pg.literal(ts) == "TIMESTAMP '2024-01-01 12:00:00.500000'"

    def test_whole_second_timestamp(self, oracle):
        assert oracle.literal(datetime(2024, 1, 1, 12)) == "TIMESTAMP '2024-01-01 12:00:00'"

    def test_aware_timestamp_keeps_offset(self, oracle, pg):
        ts = datetime(2024, 1, 1, 12, 0, 0, 250, tzinfo=timezone(timedelta(hours=-5, minutes=-30)))
        assert oracle.literal(ts) == "TIMESTAMP '2024-01-01 12:00:00.000250 -05:30'"
        assert pg.literal(ts) == "TIMESTAMP WITH TIME ZONE '2024-01-01 12:00:00.000250-05:30'"

    def test_uuid_and_bytes(self, oracle, pg):
        key = UUID("12345678-1234-5678-1234-567812345678")
        assert pg.literal(key) == "'12345678-1234-5678-1234-567812345678'"
        assert pg.literal(b"\x01\xab") == "'\\x01ab'::bytea"
        assert oracle.literal(b"\x01\xab") == "HEXTORAW('01AB')"

    def test_uuid_watermark_renders(self, pg):
        key = UUID("12345678-1234-5678-1234-567812345678")
        [sql] = pg.render(InsertRange("T", "S", "ID", lower=key, upper=None))
        assert sql.endswith("WHERE id > '12345678-1234-5678-1234-567812345678'")


class TestStrategyParsing:
    def test_case_insensitive(self):
        assert StrategyType.parse("interval") is StrategyType.INTERVAL

    def test_unknown_strategy(self):
        with pytest.raises(ValidationError, match="Invalid strategy type"):
            StrategyType.parse("ROUND_ROBIN")

    @pytest.mark.parametrize("expr, expected", [
        ("1 MONTH", IntervalSpec(1, "MONTH")),
        ("7 days", IntervalSpec(7, "DAY")),
        ("NUMTOYMINTERVAL(1, 'MONTH')", IntervalSpec(1, "MONTH")),
        ("NUMTODSINTERVAL(12,'HOUR')", IntervalSpec(12, "HOUR")),
    ])
    def test_interval_expressions(self, expr, expected):
        assert IntervalSpec.parse(expr) == expected

    def test_bad_interval(self):
        with pytest.raises(ValidationError):
            IntervalSpec.parse("every tuesday")

    def test_interval_scheme_requires_interval(self):
        with pytest.raises(ValidationError):
            PartitionScheme(StrategyType.INTERVAL, column="SALE_DATE")


class TestOracleRendering:
    def test_ctas_snapshot(self, oracle):
        sql = oracle.render(CreateTableAs("SALES_BACKUP_20240101000000", "SALES", parallel_degree=8))
        assert sql == ["CREATE TABLE sales_backup_20240101000000 PARALLEL 8 AS SELECT * FROM sales"]

    def test_interval_partitioned_create(self, oracle):
        scheme = PartitionScheme(StrategyType.INTERVAL, column="SALE_DATE", interval=IntervalSpec(1, "MONTH"))
        [sql] = oracle.render(CreatePartitionedTable("SALES", "SALES_BACKUP", scheme, parallel_degree=8))
        assert sql.startswith("CREATE TABLE sales PARALLEL 8 PARTITION BY RANGE (sale_date) "
                              "INTERVAL (NUMTOYMINTERVAL(1, 'MONTH'))")
        assert "PARTITION p_initial VALUES LESS THAN (DATE '2000-01-01')" in sql
        assert sql.endswith("AS SELECT * FROM sales_backup WHERE 1 = 0")

    def test_list_with_default_and_subpartitions(self, oracle):
        scheme = PartitionScheme(
            StrategyType.LIST, column="REGION",
            partitions=(PartitionDefinition("P_EU", ("EU",)), PartitionDefinition("P_OTHER")),
            subpartition=SubpartitionScheme(SubpartitionType.HASH, "SALE_ID", 8),
        )
        [sql] = oracle.render(CreatePartitionedTable("SALES", "SALES_BACKUP", scheme))
        assert "PARTITION BY LIST (region) SUBPARTITION BY HASH (sale_id) SUBPARTITIONS 8" in sql
        assert "PARTITION p_eu VALUES ('EU')" in sql
        assert "PARTITION p_other VALUES (DEFAULT)" in sql
        assert "NOPARALLEL" in sql

    def test_hash_and_reference(self, oracle):
        [hash_sql] = oracle.render(CreatePartitionedTable(
            "SALES", "B", PartitionScheme(StrategyType.HASH, column="SALE_ID", hash_partitions=16)))
        assert "PARTITION BY HASH (sale_id) PARTITIONS 16" in hash_sql
        [ref_sql] = oracle.render(CreatePartitionedTable(
            "LINES", "B", PartitionScheme(StrategyType.REFERENCE, reference_constraint="FK_LINES_ORDER")))
        assert "PARTITION BY REFERENCE (fk_lines_order)" in ref_sql

    def test_insert_range_and_upper_bound(self, oracle):
        [insert] = oracle.render(InsertRange("SALES", "SALES_BACKUP", "SALE_ID", lower=100, upper=200, parallel_degree=4))
        assert insert == ("INSERT /*+ PARALLEL(sales, 4) */ INTO sales SELECT * FROM sales_backup "
                          "WHERE sale_id > 100 AND sale_id <= 200")
        [bound] = oracle.render(SelectUpperBound("SALES_BACKUP", "SALE_ID", 50, lower=200))
        assert bound == ("SELECT MAX(sale_id) FROM (SELECT sale_id FROM sales_backup WHERE sale_id > 200 "
                         "ORDER BY sale_id FETCH FIRST 50 ROWS ONLY)")

    def test_null_key_insert(self, oracle):
        [sql] = oracle.render(InsertRange("T", "S", "K", nulls_only=True))
        assert sql.endswith("WHERE k IS NULL")

    def test_gather_statistics(self, oracle):
        [sql] = oracle.render(GatherStatistics("SALES", 5, 8))
        assert sql == ("BEGIN DBMS_STATS.GATHER_TABLE_STATS(ownname => USER, tabname => 'SALES', "
                       "estimate_percent => 5, degree => 8, cascade => TRUE); END;")

    def test_foreign_key(self, oracle):
        [sql] = oracle.render(AddConstraint("LINES", "FK_LINES_ORDER", ConstraintKind.FOREIGN_KEY,
                                            ("ORDER_ID",), "ORDERS", ("ID",)))
        assert sql == ('ALTER TABLE lines ADD CONSTRAINT fk_lines_order FOREIGN KEY (order_id) '
                       'REFERENCES orders (id)')

    def test_partition_maintenance(self, oracle):
        [split] = oracle.render(SplitPartition("SALES", "P_2024", (date(2024, 7, 1),), ("P_2024H1", "P_2024H2")))
        assert "SPLIT PARTITION p_2024 AT (DATE '2024-07-01') INTO (PARTITION p_2024h1, PARTITION p_2024h2)" in split
        [merge] = oracle.render(MergePartitions("SALES", "P_A", "P_B", "P_AB"))
        assert "MERGE PARTITIONS p_a, p_b INTO PARTITION p_ab" in merge

    def test_truncate_partition(self, oracle):
        assert oracle.render(TruncatePartition("SALES", "P_2020")) == [
            "ALTER TABLE sales TRUNCATE PARTITION p_2020 UPDATE GLOBAL INDEXES"]


class TestPostgresRendering:
    def test_unsupported_strategies(self, pg):
        assert not pg.supports(StrategyType.INTERVAL)
        assert not pg.supports(StrategyType.REFERENCE)
        scheme = PartitionScheme(StrategyType.INTERVAL, column="D", interval=IntervalSpec(1, "MONTH"))
        with pytest.raises(UnsupportedOperationError):
            pg.render(CreatePartitionedTable("T", "B", scheme))

    def test_range_partitioned_create_with_children(self, pg):
        scheme = PartitionScheme(StrategyType.RANGE, column="SALE_DATE", partitions=(
            PartitionDefinition("P_2023", (date(2024, 1, 1),)),
            PartitionDefinition("P_MAX"),
        ))
        stmts = pg.render(CreatePartitionedTable("SALES", "SALES_BACKUP", scheme))
        assert stmts[0] == ("CREATE TABLE sales (LIKE sales_backup INCLUDING DEFAULTS) "
                            "PARTITION BY RANGE (sale_date)")
        assert stmts[1] == ("CREATE TABLE sales_p_2023 PARTITION OF sales "
                            "FOR VALUES FROM (MINVALUE) TO (DATE '2024-01-01')")
        assert stmts[2] == ("CREATE TABLE sales_p_max PARTITION OF sales "
                            "FOR VALUES FROM (DATE '2024-01-01') TO (MAXVALUE)")

    def test_hash_children(self, pg):
        stmts = pg.render(CreatePartitionedTable("T", "B", PartitionScheme(StrategyType.HASH, column="ID", hash_partitions=2)))
        assert stmts[1:] == [
            "CREATE TABLE t_p0 PARTITION OF t FOR VALUES WITH (MODULUS 2, REMAINDER 0)",
            "CREATE TABLE t_p1 PARTITION OF t FOR VALUES WITH (MODULUS 2, REMAINDER 1)",
        ]

    def test_empty_ctas_and_upper_bound(self, pg):
        assert pg.render(CreateTableAs("T_SHAPE", "T", empty=True)) == ["CREATE TABLE t_shape AS SELECT * FROM t WITH NO DATA"]
        [bound] = pg.render(SelectUpperBound("T", "ID", 10))
        assert bound == "SELECT MAX(id) FROM (SELECT id FROM t WHERE id IS NOT NULL ORDER BY id LIMIT 10) AS batch"

    def test_split_and_merge_unsupported(self, pg):
        with pytest.raises(UnsupportedOperationError):
            pg.render(SplitPartition("T", "P1", (10,), ("P1A", "P1B")))
        with pytest.raises(UnsupportedOperationError):
            pg.render(MergePartitions("T", "P1", "P2", "P12"))

    def test_drop_partition_detaches_first(self, pg):
        assert pg.render(DropPartition("T", "P1")) == ["ALTER TABLE t DETACH PARTITION t_p1", "DROP TABLE t_p1"]

    def test_truncate_partition_truncates_child(self, pg):
        assert pg.render(TruncatePartition("T", "P1")) == ["TRUNCATE TABLE t_p1"]

    def test_add_list_partition(self, pg):
        [sql] = pg.render(AddPartition("T", PartitionDefinition("P_US", ("US",)), StrategyType.LIST))
        assert sql == "CREATE TABLE t_p_us PARTITION OF t FOR VALUES IN ('US')"


def test_get_dialect():
    assert isinstance(get_dialect("PostgreSQL"), PostgresDialect)
    with pytest.raises(UnsupportedOperationError):
        get_dialect("mysql")

"""Snowflake source: change capture through dynamic tables and streams.

Each run first (re)creates, for every base table ``T``, a dynamic table
``T_DYNAMIC`` mirroring it and a stream ``T_STREAM`` over that dynamic table.
After a stabilization delay every stream is read in batches and then dropped
and recreated, so the next run only sees newer changes.
"""

from __future__ import annotations

import snowflake.connector
from pydantic import Field
from snowflake.connector import DictCursor
from snowflake.connector.errors import Error as SnowflakeError

from dataforge.connectors.base import ConnectorConfig, Source
from dataforge.exceptions import ExtractionError
from dataforge.ingestion import DEFAULT_BATCH_SIZE, BatchAccumulator, RunContext, serialize_record
from dataforge.logging_utils import get_logger, log_operation

logger = get_logger(__name__)

SNOWFLAKE_ID = "snowflake"
DERIVED_MARKER = "_DYNAMIC"
STREAM_SUFFIX = "_STREAM"

DYNAMIC_TABLE_SQL = """CREATE OR REPLACE DYNAMIC TABLE {dynamic_table}
TARGET_LAG = '{target_lag}'
WAREHOUSE = {warehouse}
REFRESH_MODE = auto
INITIALIZE = on_create
AS
  SELECT * FROM {base_table}"""
STREAM_SQL = "CREATE OR REPLACE STREAM {stream} ON DYNAMIC TABLE {dynamic_table}"
DROP_STREAM_SQL = "DROP STREAM IF EXISTS {stream}"


def is_derived_table(table_name: str) -> bool:
    """Tables created for change capture are never captured themselves."""
    return DERIVED_MARKER in table_name.upper()


def capture_tables(table_names: list[str]) -> list[str]:
    captured = []
    for name in table_names:
        if is_derived_table(name):
            logger.debug(f"Skipping dynamic table: {name}")
            continue
        captured.append(name)
    return captured


class SnowflakeConfig(ConnectorConfig):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)
    account: str = Field(..., alias="acc", min_length=1)
    organization: str = Field(..., alias="org", min_length=1)
    database: str = Field(..., alias="db", min_length=1)
    warehouse: str = Field(..., alias="wh", min_length=1)
    stream: bool = Field(default=False, description="Enable change capture")
    schema_name: str = Field(default="PUBLIC", alias="schema")
    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, ge=1, le=100_000)
    stabilization_seconds: float = Field(default=120.0, ge=0)
    target_lag: str = Field(default="1 minutes")

    @property
    def account_identifier(self) -> str:
        return f"{self.account}-{self.organization}"


def connect_snowflake(config: SnowflakeConfig):
    return snowflake.connector.connect(
        user=config.username,
        password=config.password,
        account=config.account_identifier,
        warehouse=config.warehouse,
        database=config.database,
        schema=config.schema_name,
    )


class SnowflakeSource(Source[SnowflakeConfig]):
    TYPE = SNOWFLAKE_ID
    config_model = SnowflakeConfig

    def __init__(self) -> None:
        super().__init__()
        self.conn = None

    def setup(self, config: SnowflakeConfig) -> None:
        self.conn = None

    def _qualified(self, name: str) -> str:
        return f"{self.config.database}.{self.config.schema_name}.{name}"

    def _execute(self, sql: str) -> None:
        logger.debug("Executing", extra={"sql": sql})
        cursor = self.conn.cursor()
        try:
            cursor.execute(sql)
        finally:
            cursor.close()

    def list_tables(self) -> list[str]:
        cursor = self.conn.cursor()
        try:
            cursor.execute(f"SHOW TABLES IN SCHEMA {self.config.database}.{self.config.schema_name}")
            columns = [desc[0] for desc in cursor.description]
            if "name" not in columns:
                raise ExtractionError("SHOW TABLES returned no name column", details={"columns": columns})
            name_index = columns.index("name")
            return [str(row[name_index]) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def prepare_change_capture(self, tables: list[str]) -> list[str]:
        """Diff phase: (re)create the dynamic table and stream of every base table."""
        prepared = []
        for table in capture_tables(tables):
            self._execute(
                DYNAMIC_TABLE_SQL.format(
                    dynamic_table=self._qualified(f"{table}{DERIVED_MARKER}"),
                    target_lag=self.config.target_lag,
                    warehouse=self.config.warehouse,
                    base_table=self._qualified(table),
                )
            )
            self._create_stream(table)
            prepared.append(table)
        return prepared

    def _create_stream(self, table: str) -> None:
        self._execute(
            STREAM_SQL.format(
                stream=self._qualified(f"{table}{STREAM_SUFFIX}"),
                dynamic_table=self._qualified(f"{table}{DERIVED_MARKER}"),
            )
        )

    def recreate_stream(self, table: str) -> None:
        """Compaction: drop the drained stream and start a fresh one."""
        self._execute(DROP_STREAM_SQL.format(stream=self._qualified(f"{table}{STREAM_SUFFIX}")))
        self._create_stream(table)

    def stream_changes(self, context: RunContext, table: str) -> int:
        """Publish every pending change row of ``table``'s stream in fixed-size batches."""
        stream = self._qualified(f"{table}{STREAM_SUFFIX}")
        cursor = self.conn.cursor(DictCursor)
        try:
            cursor.execute(f"SELECT * FROM {stream}")
            with BatchAccumulator(context.publish, size=self.config.batch_size) as batch:
                for row in cursor:
                    if batch.add(serialize_record(row)):
                        context.check_cancelled()
            logger.info(
                "Stream drained",
                extra={"stream": stream, "batches": batch.flushed_batches, "rows": batch.flushed_records},
            )
            return batch.flushed_records
        finally:
            cursor.close()

    def run(self, context: RunContext) -> None:
        if self.config is None:
            raise ExtractionError("Snowflake source used before initialize()")
        if not self.config.stream:
            logger.info("Change capture disabled for this source; nothing to extract")
            return

        try:
            self.conn = connect_snowflake(self.config)
            with log_operation(logger, "in_warehouse_diffing", database=self.config.database):
                prepared = self.prepare_change_capture(self.list_tables())

            logger.info(
                "Waiting for dynamic tables to stabilize",
                extra={"seconds": self.config.stabilization_seconds, "tables": prepared},
            )
            context.wait(self.config.stabilization_seconds)

            with log_operation(logger, "change_streaming", database=self.config.database):
                for table in capture_tables(self.list_tables()):
                    context.check_cancelled()
                    self.stream_changes(context, table)
                    self.recreate_stream(table)
        except SnowflakeError as e:
            raise ExtractionError(
                f"Snowflake change capture failed: {e}",
                details={"database": self.config.database},
            ) from e
        finally:
            self.close()

    def close(self) -> None:
        if self.conn is not None:
            try:
                self.conn.close()
            except SnowflakeError as e:
                logger.warning("Failed to close Snowflake connection", extra={"error": str(e)})
            self.conn = None

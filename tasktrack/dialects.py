"""
Backend strategies.

Everything that differs between SQLite, PostgreSQL and MySQL lives here so the
services can stay backend-agnostic: the server clock expression, elapsed-time
arithmetic, UPSERT / INSERT-IGNORE construction and the view DDL. All
timestamps are naive UTC produced by the database clock.
"""

from typing import Dict, Iterable, List, Optional

from sqlalchemy import extract, func, text
from sqlalchemy.dialects import mysql, postgresql, sqlite

VIEW_NAMES = ("active_tasks", "current_task_status", "task_runs_with_latest_metrics")


class Dialect:
    name = "generic"
    insert = None

    # Python-side expressions
    def now(self):
        raise NotImplementedError

    def seconds_since(self, column):
        raise NotImplementedError

    def older_than_days(self, column, days: int):
        raise NotImplementedError

    def days_from_now(self, days: int):
        raise NotImplementedError

    # Raw SQL fragments used by the view DDL
    sql_now = "CURRENT_TIMESTAMP"

    def sql_seconds_between(self, start: str, end: str) -> str:
        raise NotImplementedError

    def upsert(self, table, values: Dict, index_elements: Iterable[str],
               update_columns: Optional[Iterable[str]] = None):
        """INSERT ... ON CONFLICT(index_elements) DO UPDATE for the given columns"""
        index_elements = list(index_elements)
        if update_columns is None:
            update_columns = [k for k in values if k not in index_elements]
        update_columns = list(update_columns)
        if not update_columns:
            return self.insert_ignore(table, values, index_elements)
        stmt = self.insert(table).values(**values)
        return stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={c: stmt.excluded[c] for c in update_columns},
        )

    def insert_ignore(self, table, values: Dict, index_elements: Iterable[str]):
        stmt = self.insert(table).values(**values)
        return stmt.on_conflict_do_nothing(index_elements=list(index_elements))

    def drop_view_statements(self) -> List[str]:
        return [f"DROP VIEW IF EXISTS {name}" for name in VIEW_NAMES]

    def create_view_statements(self) -> List[str]:
        duration = self.sql_seconds_between("r.start_time", f"COALESCE(r.end_time, {self.sql_now})")
        metrics_age = self.sql_seconds_between("m.timestamp", self.sql_now)
        heartbeat_age = self.sql_seconds_between("r.last_update", self.sql_now)
        return [
            f"""
            CREATE VIEW current_task_status AS
            SELECT s.stage_id, s.stage_name, s.stage_order,
                   t.task_id, t.task_name, t.task_type, t.task_order,
                   t.script_path, t.script_filename, t.log_path, t.log_filename,
                   r.run_id, r.hostname, r.process_id, r.status,
                   r.start_time, r.end_time, r.last_update,
                   r.total_subtasks, r.current_subtask,
                   r.overall_percent_complete, r.overall_progress_message,
                   r.memory_mb, r.cpu_percent, r.error_message,
                   CASE WHEN r.start_time IS NULL THEN NULL ELSE {duration} END AS duration_seconds,
                   CASE WHEN r.last_update IS NULL THEN NULL ELSE {heartbeat_age} END AS seconds_since_update
            FROM tasks t
            JOIN stages s ON s.stage_id = t.stage_id
            LEFT JOIN task_runs r ON r.run_id = (
                SELECT r2.run_id FROM task_runs r2
                WHERE r2.task_id = t.task_id
                ORDER BY r2.start_time DESC, r2.run_id DESC
                LIMIT 1
            )
            """,
            """
            CREATE VIEW active_tasks AS
            SELECT * FROM current_task_status
            WHERE status IN ('STARTED', 'RUNNING')
            """,
            f"""
            CREATE VIEW task_runs_with_latest_metrics AS
            SELECT r.run_id, r.task_id, s.stage_name, t.task_name,
                   r.hostname, r.process_id, r.status,
                   r.start_time, r.end_time, r.last_update,
                   r.total_subtasks, r.current_subtask,
                   r.overall_percent_complete, r.overall_progress_message,
                   r.error_message,
                   m.metric_id, m.timestamp AS metrics_timestamp, m.is_alive,
                   m.process_start_time,
                   m.cpu_percent, m.cpu_cores, m.memory_mb, m.memory_percent,
                   m.memory_vms_mb, m.swap_mb, m.read_bytes, m.write_bytes,
                   m.io_wait_percent, m.open_files, m.num_fds, m.num_threads,
                   m.child_count, m.child_total_cpu_percent, m.child_total_memory_mb,
                   m.collection_error, m.error_type AS metrics_error_type,
                   m.error_message AS metrics_error_message,
                   CASE WHEN m.timestamp IS NULL THEN NULL ELSE {metrics_age} END AS metrics_age_seconds
            FROM task_runs r
            JOIN tasks t ON t.task_id = r.task_id
            JOIN stages s ON s.stage_id = t.stage_id
            LEFT JOIN process_metrics m ON m.metric_id = (
                SELECT m2.metric_id FROM process_metrics m2
                WHERE m2.run_id = r.run_id
                ORDER BY m2.timestamp DESC, m2.metric_id DESC
                LIMIT 1
            )
            """,
        ]

    def view_statements(self) -> List[str]:
        return self.drop_view_statements() + self.create_view_statements()


class SQLiteDialect(Dialect):
    name = "sqlite"
    insert = staticmethod(sqlite.insert)
    sql_now = "strftime('%Y-%m-%d %H:%M:%f', 'now')"

    def now(self):
        return func.strftime('%Y-%m-%d %H:%M:%f', 'now')

    def seconds_since(self, column):
        return (func.julianday('now') - func.julianday(column)) * 86400.0

    def older_than_days(self, column, days: int):
        return func.julianday(column) < func.julianday('now', f'-{int(days)} days')

    def days_from_now(self, days: int):
        return func.strftime('%Y-%m-%d %H:%M:%f', 'now', f'+{int(days)} days')

    def sql_seconds_between(self, start: str, end: str) -> str:
        return f"((julianday({end}) - julianday({start})) * 86400.0)"


class PostgresDialect(Dialect):
    name = "postgresql"
    insert = staticmethod(postgresql.insert)
    sql_now = "(now() AT TIME ZONE 'utc')"

    def now(self):
        return func.timezone('utc', func.now())

    def seconds_since(self, column):
        return extract('epoch', self.now() - column)

    def older_than_days(self, column, days: int):
        return column < self.now() - func.make_interval(0, 0, 0, int(days))

    def days_from_now(self, days: int):
        return self.now() + func.make_interval(0, 0, 0, int(days))

    def sql_seconds_between(self, start: str, end: str) -> str:
        return f"EXTRACT(EPOCH FROM ({end} - {start}))"


class MySQLDialect(Dialect):
    name = "mysql"
    insert = staticmethod(mysql.insert)
    sql_now = "UTC_TIMESTAMP(6)"

    def now(self):
        return func.utc_timestamp(6)

    def seconds_since(self, column):
        return func.timestampdiff(text("MICROSECOND"), column, self.now()) / 1000000.0

    def older_than_days(self, column, days: int):
        return column < func.date_sub(self.now(), text(f"INTERVAL {int(days)} DAY"))

    def days_from_now(self, days: int):
        return func.date_add(self.now(), text(f"INTERVAL {int(days)} DAY"))

    def sql_seconds_between(self, start: str, end: str) -> str:
        return f"(TIMESTAMPDIFF(MICROSECOND, {start}, {end}) / 1000000.0)"

    def upsert(self, table, values, index_elements, update_columns=None):
        index_elements = list(index_elements)
        if update_columns is None:
            update_columns = [k for k in values if k not in index_elements]
        update_columns = list(update_columns)
        if not update_columns:
            return self.insert_ignore(table, values, index_elements)
        stmt = self.insert(table).values(**values)
        return stmt.on_duplicate_key_update(**{c: stmt.inserted[c] for c in update_columns})

    def insert_ignore(self, table, values, index_elements):
        return self.insert(table).values(**values).prefix_with("IGNORE")


_DIALECTS = {
    "sqlite": SQLiteDialect,
    "postgresql": PostgresDialect,
    "mysql": MySQLDialect,
    "mariadb": MySQLDialect,
}


def dialect_for(name: str) -> Dialect:
    """Pick the strategy for a SQLAlchemy dialect name"""
    try:
        return _DIALECTS[name]()
    except KeyError:
        raise ValueError(f"Unsupported database backend: {name}") from None

"""
Run History Manager - Persistence layer for workflow runs.

Stores one row per run and one row per node execution so finished runs can
be listed and inspected after the process that executed them has exited.
"""

import duckdb
import json
import logging
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Dict, List, Any, Union

from config import DATABASE_PATH

logger = logging.getLogger(__name__)

TERMINAL_RUN_STATES = ('completed', 'partial', 'failed', 'cancelled')


def _dumps(value: Optional[Any]) -> Optional[str]:
    return json.dumps(value) if value is not None else None


def _loads(value: Optional[str]) -> Optional[Any]:
    return json.loads(value) if value else None


class RunHistoryManager:
    """Manages run history persistence in DuckDB."""

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        self.db_path = Path(db_path or DATABASE_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # Scheduler events arrive from several pool threads at once
        self._write_lock = threading.Lock()
        self._init_database()
        logger.info(f"Run history initialized with database: {self.db_path}")

    def _init_database(self) -> None:
        """Create run tables if not exists."""
        conn = self._get_connection()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS workflow_runs (
                    run_id TEXT PRIMARY KEY,
                    workflow_id TEXT,
                    scope TEXT NOT NULL,
                    status TEXT NOT NULL,
                    node_count INTEGER DEFAULT 0,
                    duration_ms BIGINT,
                    error TEXT,
                    started_at TIMESTAMP NOT NULL,
                    finished_at TIMESTAMP
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS node_runs (
                    run_id TEXT NOT NULL,
                    node_id TEXT NOT NULL,
                    kind TEXT,
                    status TEXT NOT NULL,
                    output_json TEXT,
                    error_json TEXT,
                    duration_ms BIGINT,
                    started_at TIMESTAMP,
                    finished_at TIMESTAMP,
                    PRIMARY KEY (run_id, node_id)
                )
            """)
            conn.commit()
        finally:
            conn.close()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """
        Get new database connection.

        DuckDB handles concurrency internally, each connection
        should be used from a single thread.
        """
        return duckdb.connect(str(self.db_path), read_only=False)

    def create_run(
        self,
        run_id: str,
        scope: str,
        node_count: int,
        workflow_id: Optional[str] = None,
    ) -> bool:
        """
        Insert a new run in the running state.

        Args:
            run_id: Run identifier
            scope: Run scope ('full', 'selected', 'single')
            node_count: Number of nodes included in the run
            workflow_id: Optional identifier of the workflow the run belongs to

        Returns:
            True if inserted successfully
        """
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("""
                    INSERT INTO workflow_runs
                    (run_id, workflow_id, scope, status, node_count, started_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (run_id, workflow_id, scope, 'running', node_count, datetime.now()))
                conn.commit()
                logger.info(f"Created run {run_id} ({scope}, {node_count} nodes)")
                return True
            except Exception as e:
                logger.error(f"Failed to create run {run_id}: {e}")
                return False
            finally:
                conn.close()

    def update_run(
        self,
        run_id: str,
        status: Optional[str] = None,
        duration_ms: Optional[int] = None,
        error: Optional[str] = None,
    ) -> bool:
        """
        Update run fields. A terminal status also stamps ``finished_at``.

        Returns:
            True if updated successfully
        """
        fields = {
            'status': status,
            'duration_ms': duration_ms,
            'error': error,
        }
        updates = [f"{k} = ?" for k, v in fields.items() if v is not None]
        params: List[Any] = [v for v in fields.values() if v is not None]

        if not updates:
            return False

        if status in TERMINAL_RUN_STATES:
            updates.append("finished_at = ?")
            params.append(datetime.now())
        params.append(run_id)

        with self._write_lock:
            conn = self._get_connection()
            try:
                query = f"UPDATE workflow_runs SET {', '.join(updates)} WHERE run_id = ?"
                conn.execute(query, params)
                conn.commit()
                return True
            except Exception as e:
                logger.error(f"Failed to update run {run_id}: {e}")
                return False
            finally:
                conn.close()

    def start_node_run(self, run_id: str, node_id: str, kind: str) -> bool:
        """Record a node entering the running state."""
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("""
                    INSERT INTO node_runs (run_id, node_id, kind, status, started_at)
                    VALUES (?, ?, ?, 'running', ?)
                    ON CONFLICT (run_id, node_id) DO UPDATE SET
                        kind = excluded.kind,
                        status = excluded.status,
                        started_at = excluded.started_at
                """, (run_id, node_id, kind, datetime.now()))
                conn.commit()
                return True
            except Exception as e:
                logger.error(f"Failed to record start of node {node_id} in run {run_id}: {e}")
                return False
            finally:
                conn.close()

    def finish_node_run(
        self,
        run_id: str,
        node_id: str,
        status: str,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[Dict[str, Any]] = None,
        duration_ms: int = 0,
    ) -> bool:
        """
        Record a node's terminal state.

        Skipped nodes never started, so the row is inserted if missing.
        """
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("""
                    INSERT INTO node_runs
                    (run_id, node_id, status, output_json, error_json, duration_ms, finished_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (run_id, node_id) DO UPDATE SET
                        status = excluded.status,
                        output_json = excluded.output_json,
                        error_json = excluded.error_json,
                        duration_ms = excluded.duration_ms,
                        finished_at = excluded.finished_at
                """, (run_id, node_id, status, _dumps(output), _dumps(error), duration_ms, datetime.now()))
                conn.commit()
                return True
            except Exception as e:
                logger.error(f"Failed to record finish of node {node_id} in run {run_id}: {e}")
                return False
            finally:
                conn.close()

    def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        """
        Get a run with its node executions.

        Args:
            run_id: Run identifier

        Returns:
            Run dict with a ``nodes`` list, or None if not found
        """
        conn = self._get_connection()
        try:
            row = conn.execute("""
                SELECT run_id, workflow_id, scope, status, node_count, duration_ms, error,
                       started_at, finished_at
                FROM workflow_runs WHERE run_id = ?
            """, (run_id,)).fetchone()

            if not row:
                return None

            run = self._run_from_row(row)
            node_rows = conn.execute("""
                SELECT node_id, kind, status, output_json, error_json, duration_ms,
                       started_at, finished_at
                FROM node_runs WHERE run_id = ?
                ORDER BY node_id
            """, (run_id,)).fetchall()
            run['nodes'] = [
                {
                    'node_id': r[0],
                    'kind': r[1],
                    'status': r[2],
                    'output': _loads(r[3]),
                    'error': _loads(r[4]),
                    'duration_ms': r[5],
                    'started_at': str(r[6]) if r[6] else None,
                    'finished_at': str(r[7]) if r[7] else None,
                }
                for r in node_rows
            ]
            return run
        except Exception as e:
            logger.error(f"Failed to get run {run_id}: {e}")
            return None
        finally:
            conn.close()

    def list_runs(self, workflow_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        """
        List runs, newest first, optionally for a single workflow.

        Returns:
            List of run dicts without node detail
        """
        query = """
            SELECT run_id, workflow_id, scope, status, node_count, duration_ms, error,
                   started_at, finished_at
            FROM workflow_runs
        """
        params: List[Any] = []
        if workflow_id is not None:
            query += " WHERE workflow_id = ?"
            params.append(workflow_id)
        query += " ORDER BY started_at DESC LIMIT ?"
        params.append(limit)

        conn = self._get_connection()
        try:
            return [self._run_from_row(row) for row in conn.execute(query, params).fetchall()]
        except Exception as e:
            logger.error(f"Failed to list runs: {e}")
            return []
        finally:
            conn.close()

    def delete_run(self, run_id: str) -> bool:
        """Delete a run and its node executions."""
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("DELETE FROM node_runs WHERE run_id = ?", (run_id,))
                conn.execute("DELETE FROM workflow_runs WHERE run_id = ?", (run_id,))
                conn.commit()
                logger.info(f"Deleted run {run_id}")
                return True
            except Exception as e:
                logger.error(f"Failed to delete run {run_id}: {e}")
                return False
            finally:
                conn.close()

    def clear_workflow_history(self, workflow_id: str) -> int:
        """
        Delete every run of a workflow.

        Returns:
            Number of runs deleted
        """
        with self._write_lock:
            conn = self._get_connection()
            try:
                run_ids = [
                    row[0] for row in conn.execute(
                        "SELECT run_id FROM workflow_runs WHERE workflow_id = ?", (workflow_id,)
                    ).fetchall()
                ]
                for run_id in run_ids:
                    conn.execute("DELETE FROM node_runs WHERE run_id = ?", (run_id,))
                conn.execute("DELETE FROM workflow_runs WHERE workflow_id = ?", (workflow_id,))
                conn.commit()
                logger.info(f"Cleared {len(run_ids)} runs of workflow {workflow_id}")
                return len(run_ids)
            except Exception as e:
                logger.error(f"Failed to clear history of workflow {workflow_id}: {e}")
                return 0
            finally:
                conn.close()

    def cleanup_old_runs(self, days: int = 7) -> int:
        """
        Clean up finished runs older than specified days.

        Args:
            days: Number of days to retain runs (default: 7)

        Returns:
            Number of runs deleted
        """
        cutoff = datetime.now() - timedelta(days=days)
        with self._write_lock:
            conn = self._get_connection()
            try:
                run_ids = [
                    row[0] for row in conn.execute(f"""
                        SELECT run_id FROM workflow_runs
                        WHERE status IN ({', '.join('?' for _ in TERMINAL_RUN_STATES)})
                        AND started_at < ?
                    """, (*TERMINAL_RUN_STATES, cutoff)).fetchall()
                ]
                for run_id in run_ids:
                    conn.execute("DELETE FROM node_runs WHERE run_id = ?", (run_id,))
                    conn.execute("DELETE FROM workflow_runs WHERE run_id = ?", (run_id,))
                conn.commit()
                logger.info(f"Cleaned up {len(run_ids)} old runs (older than {days} days)")
                return len(run_ids)
            except Exception as e:
                logger.error(f"Failed to cleanup old runs: {e}")
                return 0
            finally:
                conn.close()

    @staticmethod
    def _run_from_row(row) -> Dict[str, Any]:
        return {
            'run_id': row[0],
            'workflow_id': row[1],
            'scope': row[2],
            'status': row[3],
            'node_count': row[4],
            'duration_ms': row[5],
            'error': row[6],
            'started_at': str(row[7]),
            'finished_at': str(row[8]) if row[8] else None,
        }

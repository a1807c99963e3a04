"""Staging server lifecycle: start, stop, reconcile and reclaim customer previews."""

import logging
import sqlite3
import subprocess
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from upserver.config import Config
from upserver.core.customers import require_customer
from upserver.core.errors import (
    DependencyInstallFailed,
    DevServerNotReady,
    SiteNotFound,
    SpawnFailed,
    StartInProgress,
)
from upserver.core.launch import LaunchPlan, detect_launch_plan, needs_install
from upserver.core.ports import PortAllocator, find_free_port, is_port_listening
from upserver.core.supervisor import ProcessSupervisor, SupervisedProcess, terminate_tree
from upserver.db.engine import get_db
from upserver.db.models import Customer, StagingServer, parse_dt
from upserver.integrations.agent import agent_available
from upserver.integrations.git import GitError, has_remote, is_git_repo, status_porcelain

logger = logging.getLogger(__name__)

READY_POLL_INTERVAL = 0.25
INSTALL_TAIL_CHARS = 2000
DEVTOOLS_PORT_SPAN = 50


@dataclass
class StartResult:
    status: str  # started | already_running | starting
    port: int
    url: str
    pid: int | None = None


@dataclass
class StopResult:
    status: str  # stopped | not_found
    port: int | None = None


@dataclass
class Preflight:
    site_path: str
    site_folder_exists: bool
    staging_url_configured: bool
    staging_port_valid: bool
    git_remote_configured: bool
    has_uncommitted_changes: bool
    agent_ready: bool
    dev_server_healthy: bool
    status: StagingServer | None = None


# ── Record helpers ───────────────────────────────────────────────────────────


def _row_to_record(row: sqlite3.Row) -> StagingServer:
    return StagingServer(
        customer_id=row["customer_id"],
        port=row["port"],
        pid=row["pid"],
        status=row["status"],
        started_at=parse_dt(row["started_at"]),
        last_activity=parse_dt(row["last_activity"]),
        exit_code=row["exit_code"],
        last_error=row["last_error"],
        updated_at=parse_dt(row["updated_at"]),
    )


def get_record(db: sqlite3.Connection, customer_id: str) -> StagingServer | None:
    row = db.execute(
        "SELECT * FROM staging_servers WHERE customer_id = ?", (customer_id,)
    ).fetchone()
    if not row:
        return None
    return _row_to_record(row)


def list_records(db: sqlite3.Connection, status: str | None = None) -> list[StagingServer]:
    query = "SELECT * FROM staging_servers"
    params: list = []
    if status:
        query += " WHERE status = ?"
        params.append(status)
    query += " ORDER BY customer_id"
    return [_row_to_record(r) for r in db.execute(query, params).fetchall()]


def _record_starting(db: sqlite3.Connection, customer_id: str, port: int):
    db.execute(
        """INSERT INTO staging_servers (customer_id, port, pid, status)
           VALUES (?, ?, NULL, 'starting')
           ON CONFLICT(customer_id) DO UPDATE SET
               port = excluded.port, pid = NULL, status = 'starting',
               exit_code = NULL, last_error = NULL, updated_at = datetime('now')""",
        (customer_id, port),
    )
    db.commit()


def _record_pid(db: sqlite3.Connection, customer_id: str, pid: int):
    db.execute(
        "UPDATE staging_servers SET pid = ?, updated_at = datetime('now') WHERE customer_id = ?",
        (pid, customer_id),
    )
    db.commit()


def _record_running(db: sqlite3.Connection, customer_id: str):
    db.execute(
        """UPDATE staging_servers
           SET status = 'running', started_at = datetime('now'),
               last_activity = datetime('now'), updated_at = datetime('now')
           WHERE customer_id = ?""",
        (customer_id,),
    )
    db.commit()


def _record_error(
    db: sqlite3.Connection,
    customer_id: str,
    error: str,
    exit_code: int | None = None,
    expected_pid: int | None = None,
) -> bool:
    """Mark the record failed. With ``expected_pid`` the write only lands if the pid still matches."""
    query = """UPDATE staging_servers
               SET status = 'error', pid = NULL, exit_code = ?, last_error = ?,
                   updated_at = datetime('now')
               WHERE customer_id = ?"""
    params: list = [exit_code, error, customer_id]
    if expected_pid is not None:
        query += " AND pid = ?"
        params.append(expected_pid)
    cur = db.execute(query, params)
    db.commit()
    return cur.rowcount > 0


def _record_stopped(
    db: sqlite3.Connection,
    customer_id: str,
    exit_code: int | None = None,
    expected_pid: int | None = None,
) -> bool:
    query = """UPDATE staging_servers
               SET status = 'stopped', pid = NULL, exit_code = ?, updated_at = datetime('now')
               WHERE customer_id = ?"""
    params: list = [exit_code, customer_id]
    if expected_pid is not None:
        query += " AND pid = ?"
        params.append(expected_pid)
    cur = db.execute(query, params)
    db.commit()
    return cur.rowcount > 0


def _record_last_error(db: sqlite3.Connection, customer_id: str, error: str):
    db.execute(
        "UPDATE staging_servers SET last_error = ?, updated_at = datetime('now') WHERE customer_id = ?",
        (error, customer_id),
    )
    db.commit()


def _reserved_ports(db: sqlite3.Connection, customer_id: str) -> set[int]:
    rows = db.execute(
        """SELECT port FROM staging_servers
           WHERE customer_id != ? AND status IN ('starting', 'running')""",
        (customer_id,),
    ).fetchall()
    return {r["port"] for r in rows}


def _stale(record: StagingServer, seconds: float) -> bool:
    """True if the record has not changed for longer than ``seconds`` (sqlite stores UTC)."""
    if record.updated_at is None:
        return False
    updated = record.updated_at.replace(tzinfo=timezone.utc)
    return (datetime.now(timezone.utc) - updated).total_seconds() > seconds


# ── Manager ──────────────────────────────────────────────────────────────────


class StagingManager:
    """Owns every customer's preview server.

    The database record is the source of truth for status; the supervisor's
    process map is only a cache and is re-checked against the OS and the port
    before any decision.
    """

    def __init__(
        self,
        config: Config,
        supervisor: ProcessSupervisor | None = None,
        allocator: PortAllocator | None = None,
        notifier=None,
    ):
        self.config = config
        self.supervisor = supervisor or ProcessSupervisor()
        self.supervisor.on_exit = self._handle_exit
        self.allocator = allocator or PortAllocator(
            config.port_range_start, config.port_range_end, config.staging_host
        )
        self.notifier = notifier
        self._lock = threading.Lock()
        self._in_flight: set[str] = set()

    # ── Queries ──

    def is_starting(self, customer_id: str) -> bool:
        with self._lock:
            return customer_id in self._in_flight

    def get_status(self, customer_id: str) -> StagingServer | None:
        """Read the record, correcting it against reality first."""
        with get_db(self.config.db_path) as db:
            record = get_record(db, customer_id)
            if record is None or self.is_starting(customer_id):
                return record
            return self._reconcile(db, record)

    def list_records(self) -> list[StagingServer]:
        with get_db(self.config.db_path) as db:
            return list_records(db)

    def staging_url(self, customer: Customer, port: int) -> str:
        return customer.staging_url or f"http://{self.config.staging_host}:{port}"

    def preflight(self, customer_id: str) -> Preflight:
        """Readiness checklist shown before a customer starts editing."""
        with get_db(self.config.db_path) as db:
            customer = require_customer(db, customer_id)
        site = self.config.site_path(customer.site_folder)
        exists = site.is_dir()

        remote = False
        dirty = False
        if exists and is_git_repo(site):
            try:
                remote = has_remote(site)
                dirty = bool(status_porcelain(site))
            except GitError as e:
                logger.warning("Preflight git check failed for %s: %s", customer_id, e)

        port_valid = customer.staging_port is None or (
            self.config.port_range_start <= customer.staging_port <= self.config.port_range_end
        )
        record = self.get_status(customer_id)

        return Preflight(
            site_path=str(site),
            site_folder_exists=exists,
            staging_url_configured=bool(customer.staging_url),
            staging_port_valid=port_valid,
            git_remote_configured=remote,
            has_uncommitted_changes=dirty,
            agent_ready=agent_available(),
            dev_server_healthy=record is not None and record.status == "running",
            status=record,
        )

    # ── Start ──

    def start(self, customer_id: str) -> StartResult:
        with self._lock:
            if customer_id in self._in_flight:
                raise StartInProgress(customer_id)
            self._in_flight.add(customer_id)
        try:
            return self._start(customer_id)
        finally:
            with self._lock:
                self._in_flight.discard(customer_id)

    def _start(self, customer_id: str) -> StartResult:
        with get_db(self.config.db_path) as db:
            customer = require_customer(db, customer_id)
            record = get_record(db, customer_id)
            if record is not None and record.status in ("running", "starting"):
                record = self._reconcile(db, record)
                if record.status == "running":
                    _touch(db, customer_id)
                    return StartResult(
                        "already_running", record.port,
                        self.staging_url(customer, record.port), record.pid,
                    )
                if record.status == "starting":
                    return StartResult(
                        "starting", record.port,
                        self.staging_url(customer, record.port), record.pid,
                    )

        site = self.config.site_path(customer.site_folder)
        if not site.is_dir():
            raise SiteNotFound(f"Site folder not found: {site}")

        plan = detect_launch_plan(site)
        if needs_install(site, plan):
            try:
                self._install(customer_id, site, plan)
            except DependencyInstallFailed as e:
                with get_db(self.config.db_path) as db:
                    _record_last_error(db, customer_id, str(e))
                self._notify_error(customer_id, e)
                raise

        with get_db(self.config.db_path) as db:
            port = self.allocator.allocate(
                customer_id,
                fixed_port=customer.staging_port,
                reserved=_reserved_ports(db, customer_id),
            )
            _record_starting(db, customer_id, port)

        devtools_port = None
        if plan.manifest_driven:
            devtools_port = find_free_port(
                self.config.devtools_port,
                self.config.devtools_port + DEVTOOLS_PORT_SPAN - 1,
                self.config.staging_host,
            ) or self.config.devtools_port

        command = plan.run_command(port, self.config.staging_host)
        try:
            handle = self.supervisor.spawn(
                customer_id, command, site, plan.run_env(port, devtools_port)
            )
        except OSError as e:
            err = SpawnFailed(f"Failed to spawn preview server ({command[0]}): {e}")
            with get_db(self.config.db_path) as db:
                _record_error(db, customer_id, str(err))
            self._notify_error(customer_id, err)
            raise err from e

        with get_db(self.config.db_path) as db:
            _record_pid(db, customer_id, handle.pid)

        if self._wait_ready(handle, port):
            with get_db(self.config.db_path) as db:
                _record_running(db, customer_id)
            logger.info(
                "Preview for %s running on port %d (pid %d)", customer_id, port, handle.pid
            )
            return StartResult("started", port, self.staging_url(customer, port), handle.pid)

        self.supervisor.release(customer_id, handle.pid)
        exited = handle.proc.returncode is not None
        terminate_tree(handle.pid, self.config.stop_timeout)
        tail = handle.diagnostics()
        if exited:
            message = f"Preview server exited with code {handle.proc.returncode} before becoming ready"
        else:
            message = (
                f"Preview server did not accept connections on port {port} "
                f"within {self.config.ready_timeout:g}s"
            )
        with get_db(self.config.db_path) as db:
            _record_error(db, customer_id, tail or message, exit_code=handle.proc.returncode)
        logger.warning("Preview for %s failed to start: %s", customer_id, message)
        err = DevServerNotReady(message, tail)
        self._notify_error(customer_id, err)
        raise err

    def _install(self, customer_id: str, site: Path, plan: LaunchPlan):
        command = plan.install_command
        logger.info("Installing dependencies for %s: %s", customer_id, " ".join(command))
        try:
            proc = subprocess.Popen(
                command,
                cwd=str(site),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                start_new_session=True,
            )
        except OSError as e:
            raise DependencyInstallFailed(f"Could not run {command[0]}: {e}") from e

        try:
            output, _ = proc.communicate(timeout=self.config.install_timeout)
        except subprocess.TimeoutExpired:
            terminate_tree(proc.pid, self.config.stop_timeout)
            output, _ = proc.communicate()
            raise DependencyInstallFailed(
                f"Dependency install timed out after {self.config.install_timeout:g}s",
                (output or "")[-INSTALL_TAIL_CHARS:],
            )

        if proc.returncode != 0:
            raise DependencyInstallFailed(
                f"Dependency install failed with exit code {proc.returncode}",
                (output or "")[-INSTALL_TAIL_CHARS:],
            )
        logger.info("Dependencies installed for %s", customer_id)

    def _wait_ready(self, handle: SupervisedProcess, port: int) -> bool:
        deadline = time.monotonic() + self.config.ready_timeout
        while time.monotonic() < deadline:
            if handle.proc.returncode is not None:
                return False
            if is_port_listening(port, self.config.staging_host):
                return handle.proc.returncode is None
            time.sleep(READY_POLL_INTERVAL)
        return False

    # ── Stop ──

    def stop(self, customer_id: str) -> StopResult:
        if self.is_starting(customer_id):
            raise StartInProgress(customer_id)

        with get_db(self.config.db_path) as db:
            record = get_record(db, customer_id)
        if record is None:
            return StopResult("not_found")

        self.supervisor.release(customer_id)
        if record.pid is not None:
            try:
                if not terminate_tree(record.pid, self.config.stop_timeout):
                    logger.warning(
                        "Preview for %s (pid %d) survived SIGKILL", customer_id, record.pid
                    )
            except OSError:
                logger.exception("Failed to terminate preview for %s", customer_id)

        with get_db(self.config.db_path) as db:
            _record_stopped(db, customer_id)
        logger.info("Preview for %s stopped", customer_id)
        return StopResult("stopped", record.port)

    # ── Activity & idle reclaim ──

    def update_activity(self, customer_id: str):
        with get_db(self.config.db_path) as db:
            _touch(db, customer_id)

    def cleanup_inactive(self, idle_minutes: int | None = None) -> list[str]:
        """Stop running previews idle for longer than the threshold. Returns stopped ids."""
        minutes = self.config.idle_timeout_minutes if idle_minutes is None else idle_minutes
        with get_db(self.config.db_path) as db:
            rows = db.execute(
                """SELECT customer_id FROM staging_servers
                   WHERE status = 'running'
                     AND last_activity IS NOT NULL
                     AND last_activity < datetime('now', ?)""",
                (f"-{minutes} minutes",),
            ).fetchall()

        stopped = []
        for row in rows:
            customer_id = row["customer_id"]
            logger.info("Stopping idle preview for %s", customer_id)
            try:
                self.stop(customer_id)
            except StartInProgress:
                continue
            stopped.append(customer_id)
        return stopped

    # ── Reconciliation ──

    def _reconcile(self, db: sqlite3.Connection, record: StagingServer) -> StagingServer:
        customer_id = record.customer_id
        alive = self.supervisor.is_alive(customer_id, record.pid)

        if record.status == "starting":
            if not alive:
                tail = self.supervisor.diagnostics(customer_id)
                self.supervisor.release(customer_id, record.pid)
                _record_error(db, customer_id, tail or "Preview server exited before becoming ready")
                logger.info("Reconciled %s: starting -> error", customer_id)
            elif is_port_listening(record.port, self.config.staging_host):
                _record_running(db, customer_id)
                logger.info("Reconciled %s: starting -> running", customer_id)
            elif _stale(record, self.config.ready_timeout):
                self.supervisor.release(customer_id, record.pid)
                terminate_tree(record.pid, self.config.stop_timeout)
                _record_error(db, customer_id, "Preview server never became ready")
                logger.info("Reconciled %s: stale starting -> error", customer_id)
        elif record.status == "running":
            if not (alive and is_port_listening(record.port, self.config.staging_host)):
                self.supervisor.release(customer_id, record.pid)
                if alive:
                    # Alive but not serving: don't leave an orphan holding the port.
                    terminate_tree(record.pid, self.config.stop_timeout)
                _record_stopped(db, customer_id)
                logger.info("Reconciled %s: running -> stopped", customer_id)

        return get_record(db, customer_id)

    def _handle_exit(self, customer_id: str, pid: int, returncode: int | None):
        """Exit event from the supervisor's watcher thread."""
        if self.is_starting(customer_id):
            return  # the start path owns the outcome
        if not self.supervisor.tracks(customer_id, pid):
            return
        handle = self.supervisor.release(customer_id, pid)

        with get_db(self.config.db_path) as db:
            if returncode == 0:
                changed = _record_stopped(db, customer_id, exit_code=0, expected_pid=pid)
            else:
                tail = handle.diagnostics() if handle else ""
                changed = _record_error(
                    db, customer_id,
                    tail or f"Preview server exited with code {returncode}",
                    exit_code=returncode, expected_pid=pid,
                )
        if changed:
            logger.info("Preview for %s exited (code %s), record updated", customer_id, returncode)

    def _notify_error(self, customer_id: str, exc: Exception):
        if self.notifier is None:
            return
        self.notifier.notify(
            "error",
            customer_id=customer_id,
            context="staging start",
            error_type=type(exc).__name__,
            detail=str(exc),
        )


def _touch(db: sqlite3.Connection, customer_id: str):
    db.execute(
        "UPDATE staging_servers SET last_activity = datetime('now') WHERE customer_id = ?",
        (customer_id,),
    )
    db.commit()


# ── Idle sweeper ─────────────────────────────────────────────────────────────


class StagingSweeper:
    """Background thread that reclaims idle preview servers."""

    def __init__(self, manager: StagingManager, interval: float | None = None):
        self.manager = manager
        self.interval = manager.config.cleanup_interval if interval is None else interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="staging-sweeper", daemon=True
        )
        self._thread.start()
        logger.info("Staging sweeper started (every %.0fs)", self.interval)

    def stop(self):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        logger.info("Staging sweeper stopped")

    def _run(self):
        while not self._stop_event.wait(self.interval):
            try:
                stopped = self.manager.cleanup_inactive()
                if stopped:
                    logger.info("Reclaimed idle previews: %s", ", ".join(stopped))
            except Exception:
                logger.exception("Error in staging sweeper loop")

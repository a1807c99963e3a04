"""Preview process supervision: spawning, output capture, exit watching, tree kill."""

import logging
import os
import signal
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

TAIL_CHARS = 500

# (customer_id, pid, returncode)
ExitHandler = Callable[[str, int, int | None], None]


class OutputTail:
    """Keeps the last ``limit`` characters written to it."""

    def __init__(self, limit: int = TAIL_CHARS):
        self.limit = limit
        self._buf = ""
        self._lock = threading.Lock()

    def write(self, text: str):
        with self._lock:
            self._buf = (self._buf + text)[-self.limit:]

    def read(self) -> str:
        with self._lock:
            return self._buf


@dataclass
class SupervisedProcess:
    customer_id: str
    proc: subprocess.Popen
    stdout_tail: OutputTail
    stderr_tail: OutputTail

    @property
    def pid(self) -> int:
        return self.proc.pid

    def diagnostics(self) -> str:
        """Captured stderr, falling back to stdout when stderr is empty."""
        return self.stderr_tail.read() or self.stdout_tail.read()


def is_pid_alive(pid: int | None) -> bool:
    """Check if a process is still running."""
    if pid is None or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # Process exists but we can't signal it


def _group_alive(pgid: int) -> bool:
    try:
        os.killpg(pgid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True


def _is_group_leader(pid: int) -> bool:
    try:
        return os.getpgid(pid) == pid
    except ProcessLookupError:
        return False


def terminate_tree(pid: int, timeout: float = 10.0, poll_interval: float = 0.1) -> bool:
    """SIGTERM the process group led by ``pid``, escalating to SIGKILL.

    Returns True once nothing in the group is left. Dev-server tooling forks
    (npm -> node -> esbuild), so the whole group is signalled, not just the leader.
    """
    if not _group_alive(pid):
        return True
    if not _is_group_leader(pid) and not is_pid_alive(pid):
        return True

    try:
        if _is_group_leader(pid):
            os.killpg(pid, signal.SIGTERM)
        else:
            os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return True

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not _group_alive(pid):
            return True
        time.sleep(poll_interval)

    logger.warning("Process group %d ignored SIGTERM for %.1fs, sending SIGKILL", pid, timeout)
    try:
        os.killpg(pid, signal.SIGKILL)
    except ProcessLookupError:
        return True

    deadline = time.monotonic() + 2.0
    while time.monotonic() < deadline:
        if not _group_alive(pid):
            return True
        time.sleep(poll_interval)
    return False


class ProcessSupervisor:
    """Owns the live preview processes, at most one per customer.

    The handle map is a cache: callers re-verify liveness against the OS
    (and the port) before trusting it.
    """

    def __init__(self, on_exit: ExitHandler | None = None):
        self.on_exit = on_exit
        self._procs: dict[str, SupervisedProcess] = {}
        self._lock = threading.Lock()

    def spawn(
        self,
        customer_id: str,
        command: list[str],
        cwd: str | Path,
        env: dict[str, str] | None = None,
    ) -> SupervisedProcess:
        """Start a preview process in its own process group. Raises OSError on spawn failure."""
        proc = subprocess.Popen(
            command,
            cwd=str(cwd),
            env={**os.environ, **(env or {})},
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
        handle = SupervisedProcess(
            customer_id=customer_id,
            proc=proc,
            stdout_tail=OutputTail(),
            stderr_tail=OutputTail(),
        )
        with self._lock:
            self._procs[customer_id] = handle

        for stream, tail, label in (
            (proc.stdout, handle.stdout_tail, "stdout"),
            (proc.stderr, handle.stderr_tail, "stderr"),
        ):
            threading.Thread(
                target=self._pump,
                args=(customer_id, stream, tail, label),
                name=f"staging-{label}-{customer_id}",
                daemon=True,
            ).start()
        threading.Thread(
            target=self._watch,
            args=(handle,),
            name=f"staging-watch-{customer_id}",
            daemon=True,
        ).start()

        logger.info("Spawned preview for %s (pid %d): %s", customer_id, proc.pid, " ".join(command))
        return handle

    def _pump(self, customer_id: str, stream, tail: OutputTail, label: str):
        try:
            for raw in iter(stream.readline, b""):
                text = raw.decode(errors="replace")
                tail.write(text)
                logger.debug("[%s] %s: %s", customer_id, label, text.rstrip())
        finally:
            stream.close()

    def _watch(self, handle: SupervisedProcess):
        returncode = handle.proc.wait()
        logger.info(
            "Preview for %s (pid %d) exited with code %s",
            handle.customer_id, handle.pid, returncode,
        )
        if returncode not in (0, None):
            logger.debug("[%s] last output: %s", handle.customer_id, handle.diagnostics())
        if self.on_exit is None:
            return
        try:
            self.on_exit(handle.customer_id, handle.pid, returncode)
        except Exception:
            logger.exception("Exit handler failed for %s (pid %d)", handle.customer_id, handle.pid)

    def get(self, customer_id: str) -> SupervisedProcess | None:
        with self._lock:
            return self._procs.get(customer_id)

    def tracks(self, customer_id: str, pid: int | None) -> bool:
        """True if ``pid`` is the process this supervisor currently believes is live."""
        handle = self.get(customer_id)
        return handle is not None and pid is not None and handle.pid == pid

    def release(self, customer_id: str, pid: int | None = None) -> SupervisedProcess | None:
        """Stop tracking the customer's process so later exit events are ignored."""
        with self._lock:
            handle = self._procs.get(customer_id)
            if handle is None or (pid is not None and handle.pid != pid):
                return None
            return self._procs.pop(customer_id)

    def is_alive(self, customer_id: str, pid: int | None) -> bool:
        if pid is None:
            return False
        handle = self.get(customer_id)
        if handle is not None and handle.pid == pid and handle.proc.returncode is not None:
            return False
        return is_pid_alive(pid)

    def diagnostics(self, customer_id: str) -> str:
        handle = self.get(customer_id)
        return handle.diagnostics() if handle else ""

import logging
import signal
import subprocess
import threading
from typing import List, Optional, Sequence

from .config import ProcessBinding
from .faults import FaultTracker
from .log import SERVICE_LOGGER

log = logging.getLogger(SERVICE_LOGGER)


class SpawnError(Exception):
    pass


# ============================================================
# Provider (subprocess)
# ============================================================
class SubprocessProvider:
    """
    Children run detached from the daemon's session, with no arguments and
    no stdin, inheriting stdout/stderr.
    """

    def spawn(self, path: str) -> subprocess.Popen:
        try:
            return subprocess.Popen(
                [path],
                stdin=subprocess.DEVNULL,
                close_fds=True,
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnError(f"{path}: {e.strerror or e}") from e

    def terminate(self, handle: subprocess.Popen) -> None:
        handle.send_signal(signal.SIGTERM)

    def wait(self, handle: subprocess.Popen) -> int:
        return handle.wait()

    def poll(self, handle: subprocess.Popen) -> Optional[int]:
        return handle.poll()

    def pid(self, handle: subprocess.Popen) -> int:
        return handle.pid


# ============================================================
# Supervisor
# ============================================================
class ProcessSupervisor:
    def __init__(self, bindings: Sequence[ProcessBinding], provider=None, faults: Optional[FaultTracker] = None):
        self.bindings = list(bindings)
        self.provider = provider or SubprocessProvider()
        self._faults = faults or FaultTracker()
        self._lock = threading.Lock()
        self._started: List[ProcessBinding] = []

    def _reap(self, b: ProcessBinding) -> None:
        # caller holds the lock
        if not b.running or b.handle is None:
            return
        rc = self.provider.poll(b.handle)
        if rc is None:
            return
        log.info(f"CMD {b.link_id} ({b.command_path}) exited on its own rc={rc}")
        self._mark_stopped(b)

    def _mark_stopped(self, b: ProcessBinding) -> None:
        b.running = False
        b.handle = None
        if b in self._started:
            self._started.remove(b)

    def ensure_running(self, b: ProcessBinding) -> bool:
        """
        Start the binding's command unless it is already running.

        Oneshot commands are waited for before returning, so the binding is
        back to stopped when this returns. Returns True when a child was
        spawned.
        """
        with self._lock:
            self._reap(b)
            if b.running:
                log.info(f"CMD {b.link_id} already running (pid {self.provider.pid(b.handle)}), not starting again")
                return False
            if not b.valid:
                log.warning(f"CMD {b.link_id} is not a valid executable, not starting")
                return False

            key = f"SPAWN:{b.link_id}"
            try:
                handle = self.provider.spawn(b.command_path)
            except SpawnError as e:
                log.debug(f"CMD {b.link_id} spawn failed: {e}")
                self._faults.raise_fault(key, f"can't start {b.command_path}: {e}")
                return False
            self._faults.clear_fault(key)

            b.handle = handle
            b.running = True
            self._started.append(b)
            log.info(f"CMD {b.link_id} started {b.command_path} (pid {self.provider.pid(handle)})")

            if b.oneshot:
                rc = self.provider.wait(handle)
                log.info(f"CMD {b.link_id} oneshot finished rc={rc}")
                self._mark_stopped(b)
            return True

    def ensure_stopped(self, b: ProcessBinding) -> bool:
        """
        Terminate the binding's child and block until it exits. No timeout:
        a child ignoring SIGTERM stalls here.
        """
        with self._lock:
            self._reap(b)
            if not b.running:
                log.debug(f"CMD {b.link_id} not running, nothing to stop")
                return False
            pid = self.provider.pid(b.handle)
            log.info(f"CMD {b.link_id} stopping pid {pid}")
            try:
                self.provider.terminate(b.handle)
            except ProcessLookupError:
                log.debug(f"CMD {b.link_id} pid {pid} already gone")
            rc = self.provider.wait(b.handle)
            log.info(f"CMD {b.link_id} stopped rc={rc}")
            self._mark_stopped(b)
            return True

    def is_running(self, b: ProcessBinding) -> bool:
        with self._lock:
            self._reap(b)
            return b.running

    def shutdown(self) -> None:
        running = [b for b in reversed(self._started) if self.is_running(b)]
        if running:
            log.info(f"stopping {len(running)} running command(s)")
        for b in running:
            self.ensure_stopped(b)

"""
Run one process on a pseudo-terminal and collect everything it prints.

sudo only renders its password / Touch ID prompt when it has a terminal, so the
child gets the slave side of a fresh pty as stdin, stdout and stderr. We never
write to the master; it is drained until the process exits or the deadline
passes.
"""
import errno
import fcntl
import logging
import os
import pty
import select
import subprocess
import termios
import threading
from typing import Dict, List, Optional

from splitroute.core.errors import CommandTimeout, PtyAllocationFailed, SpawnFailed
from splitroute.core.models import CommandResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 90.0
KILL_GRACE_S = 5.0
_CHUNK = 4096


def _make_controlling_tty() -> None:
    # Runs in the child after setsid(); stdin is already the pty slave.
    try:
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)
    except OSError:
        # Output is still captured; only /dev/tty prompts are affected.
        pass


class _OutputCollector:
    """Appends whatever becomes readable on the master fd to a shared buffer."""

    def __init__(self, master_fd: int):
        self.master_fd = master_fd
        self._buf = bytearray()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._loop, name="pty-reader", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def append(self, chunk: bytes) -> None:
        with self._lock:
            self._buf.extend(chunk)

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                ready, _, _ = select.select([self.master_fd], [], [], 0.1)
            except (OSError, ValueError):
                break
            if not ready:
                continue
            try:
                chunk = os.read(self.master_fd, _CHUNK)
            except OSError:
                # EIO: every slave handle is closed
                break
            if not chunk:
                break
            self.append(chunk)

    def stop(self) -> None:
        self._stop.set()
        self._thread.join()

    def drain(self) -> None:
        """Read whatever the kernel still buffers, without blocking."""
        os.set_blocking(self.master_fd, False)
        while True:
            try:
                chunk = os.read(self.master_fd, _CHUNK)
            except BlockingIOError:
                return
            except OSError as e:
                if e.errno in (errno.EIO, errno.EBADF):
                    return
                raise
            if not chunk:
                return
            self.append(chunk)

    def text(self) -> str:
        with self._lock:
            return bytes(self._buf).decode("utf-8", errors="replace")


def _stop_process(proc: subprocess.Popen) -> None:
    """SIGTERM, then SIGKILL after the grace period. Never raises."""
    try:
        proc.terminate()
        try:
            proc.wait(timeout=KILL_GRACE_S)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait(timeout=KILL_GRACE_S)
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.error("pid=%s could not be stopped: %s", proc.pid, e)


class PtySupervisor:
    def run(
        self,
        argv: List[str],
        timeout_seconds: float = DEFAULT_TIMEOUT_S,
        env: Optional[Dict[str, str]] = None,
    ) -> CommandResult:
        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise PtyAllocationFailed(f"openpty failed: {e}") from e

        try:
            try:
                proc = subprocess.Popen(
                    argv,
                    stdin=slave_fd,
                    stdout=slave_fd,
                    stderr=slave_fd,
                    env=env,
                    start_new_session=True,
                    # Runs in the forked child before exec, next to our reader threads.
                    # It must stay a single ioctl with no logging or locking.
                    preexec_fn=_make_controlling_tty,
                )
            except (OSError, subprocess.SubprocessError) as e:
                raise SpawnFailed(str(e)) from e
            finally:
                # The child holds its own copy; ours would keep EOF from ever arriving.
                os.close(slave_fd)

            logger.debug("spawned pid=%s argv=%s", proc.pid, argv)
            collector = _OutputCollector(master_fd)
            collector.start()

            try:
                returncode = proc.wait(timeout=timeout_seconds)
            except subprocess.TimeoutExpired:
                logger.warning("pid=%s timed out after %ss, terminating", proc.pid, timeout_seconds)
                _stop_process(proc)
                collector.stop()
                raise CommandTimeout(
                    f"Command timed out after {timeout_seconds:g}s "
                    "(sudo may be waiting for password or Touch ID input)."
                )

            collector.stop()
            collector.drain()
            return CommandResult(exit_code=returncode, output=collector.text())
        finally:
            os.close(master_fd)

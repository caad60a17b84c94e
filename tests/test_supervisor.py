import subprocess
import time
from unittest.mock import MagicMock

import pytest

from splitroute.core.errors import CommandTimeout, PtyAllocationFailed, SpawnFailed
from splitroute.system import supervisor as supervisor_mod
from splitroute.system.supervisor import KILL_GRACE_S, PtySupervisor


@pytest.fixture
def sup() -> PtySupervisor:
    return PtySupervisor()


def test_collects_stdout_and_stderr(sup):
    res = sup.run(["/bin/sh", "-c", "echo out; echo err 1>&2"], timeout_seconds=10)
    assert res.exit_code == 0
    lines = [ln.strip() for ln in res.output.splitlines()]
    assert "out" in lines
    assert "err" in lines


def test_real_exit_status(sup):
    res = sup.run(["/bin/sh", "-c", "echo bye; exit 3"], timeout_seconds=10)
    assert res.exit_code == 3
    assert "bye" in res.output


def test_output_written_right_before_exit_is_kept(sup):
    script = "i=0; while [ $i -lt 200 ]; do echo line$i; i=$((i+1)); done"
    res = sup.run(["/bin/sh", "-c", script], timeout_seconds=10)
    assert "line0" in res.output
    assert "line199" in res.output


def test_stdin_is_a_tty(sup):
    res = sup.run(["/bin/sh", "-c", "[ -t 0 ] && echo tty || echo notty"], timeout_seconds=10)
    assert "notty" not in res.output
    assert "tty" in res.output


def test_env_is_passed(sup):
    res = sup.run(["/bin/sh", "-c", 'echo "svc=$SERVICE"'], timeout_seconds=10, env={"SERVICE": "netflix", "PATH": "/usr/bin:/bin"})
    assert "svc=netflix" in res.output


def test_timeout_is_bounded(sup):
    started = time.monotonic()
    with pytest.raises(CommandTimeout) as exc:
        sup.run(["/bin/sh", "-c", "sleep 60"], timeout_seconds=0.5)
    assert time.monotonic() - started < 0.5 + KILL_GRACE_S + 2
    assert "sudo may be waiting" in str(exc.value)


def test_timeout_kills_process_ignoring_sigterm(sup):
    started = time.monotonic()
    with pytest.raises(CommandTimeout):
        sup.run(["/bin/sh", "-c", "trap '' TERM; while :; do sleep 1; done"], timeout_seconds=0.5)
    assert time.monotonic() - started < 0.5 + KILL_GRACE_S + 2


def test_spawn_failure(sup, tmp_path):
    with pytest.raises(SpawnFailed):
        sup.run([str(tmp_path / "does-not-exist")], timeout_seconds=5)


def test_pty_allocation_failure(sup, monkeypatch):
    def boom():
        raise OSError("out of ptys")

    monkeypatch.setattr(supervisor_mod.pty, "openpty", boom)
    with pytest.raises(PtyAllocationFailed):
        sup.run(["/bin/true"], timeout_seconds=5)


def test_timeout_still_raised_when_terminate_fails(sup, monkeypatch):
    def denied(self):
        raise PermissionError("operation not permitted")

    monkeypatch.setattr(supervisor_mod.subprocess.Popen, "terminate", denied)
    with pytest.raises(CommandTimeout):
        sup.run(["/bin/sh", "-c", "sleep 2"], timeout_seconds=0.3)


def test_stop_process_tolerates_vanished_child():
    proc = MagicMock(pid=4242)
    proc.terminate.side_effect = ProcessLookupError()
    supervisor_mod._stop_process(proc)
    proc.kill.assert_not_called()


def test_stop_process_escalates_to_kill():
    proc = MagicMock(pid=4242)
    proc.wait.side_effect = [subprocess.TimeoutExpired("sh", KILL_GRACE_S), 0]
    supervisor_mod._stop_process(proc)
    proc.kill.assert_called_once_with()
    assert proc.wait.call_count == 2

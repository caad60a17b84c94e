import threading

import pytest
from pydantic import ValidationError

from splitroute.core.errors import CommandTimeout
from splitroute.core.models import AppConfig, BatchRequest, CommandResult, SummaryLevel, worst_level
from splitroute.system.auth import AdminPromptBackend
from splitroute.system.batch import BatchExecutor
from splitroute.system.runner import CommandRunner, ScriptPaths

CHECK_OK = "== Route table check\nexample.com v4 1.2.3.4 en0 172.20.10.1 OK\n"


class FakeRunner:
    def __init__(self, results=None):
        self.results = results or {}
        self.calls = []

    def run(self, action, service, extra_args):
        self.calls.append((action, service, extra_args))
        res = self.results.get(service, CommandResult(exit_code=0, output=f"{service} done"))
        if isinstance(res, Exception):
            raise res
        return res


class BlockingRunner(FakeRunner):
    def __init__(self):
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()

    def run(self, action, service, extra_args):
        self.started.set()
        self.release.wait(10)
        return super().run(action, service, extra_args)


def test_request_dedupes_keeping_first_occurrence():
    req = BatchRequest(action="on", services=["a", "b", "a", "c", "b"])
    assert req.services == ["a", "b", "c"]


def test_request_rejects_unsafe_names():
    with pytest.raises(ValidationError):
        BatchRequest(action="on", services=["ok", "../etc"])


def test_args_for_prefers_per_service_args():
    req = BatchRequest(action="status", services=["a", "b"], default_args=["--no-curl"],
                       extra_args={"b": ["--no-curl", "--host", "b.com"]})
    assert req.args_for("a") == ["--no-curl"]
    assert req.args_for("b") == ["--no-curl", "--host", "b.com"]


def test_runs_in_order_and_combines_output():
    runner = FakeRunner()
    outcome = BatchExecutor().run(BatchRequest(action="on", services=["a", "b", "a", "c"]), runner)

    assert [c[1] for c in runner.calls] == ["a", "b", "c"]
    assert [s.service for s in outcome.summaries] == ["a", "b", "c"]
    assert outcome.text == "===== a =====\na done\n\n===== b =====\nb done\n\n===== c =====\nc done"
    assert outcome.title == "ON — 3 services"


def test_failure_does_not_stop_later_services():
    runner = FakeRunner({
        "a": CommandTimeout("Command timed out after 90s"),
        "b": CommandResult(exit_code=1, output=""),
    })
    outcome = BatchExecutor().run(BatchRequest(action="status", services=["a", "b", "c"],
                                               default_args=["--no-curl"]), runner)

    levels = [s.level for s in outcome.summaries]
    assert levels[:2] == [SummaryLevel.ERROR, SummaryLevel.ERROR]
    assert len(runner.calls) == 3
    assert "===== a =====\nERROR: Command timed out after 90s" in outcome.text
    assert "===== b =====\n(no output)" in outcome.text
    assert worst_level(outcome.summaries) is SummaryLevel.ERROR


def test_prefix_comes_first():
    runner = FakeRunner({"a": CommandResult(exit_code=0, output=CHECK_OK)})
    req = BatchRequest(action="verify", services=["a"], prefix="SKIPPED (no hosts): z\n",
                       extra_args={"a": ["--no-curl", "--host", "example.com"]})
    outcome = BatchExecutor().run(req, runner)

    assert outcome.text.startswith("SKIPPED (no hosts): z\n\n===== a =====\n")
    assert outcome.summaries[0].level is SummaryLevel.OK
    assert runner.calls == [("verify", "a", ["--no-curl", "--host", "example.com"])]
    assert outcome.title == "VERIFY — a"


def test_submit_is_single_flight():
    executor = BatchExecutor()
    runner = BlockingRunner()
    done = []

    assert executor.submit(BatchRequest(action="on", services=["a"]), runner, done.append)
    assert runner.started.wait(5)
    assert executor.busy

    other = FakeRunner()
    assert executor.submit(BatchRequest(action="off", services=["b"]), other, done.append) is False
    assert executor.busy
    assert other.calls == []

    runner.release.set()
    executor.join(5)
    assert not executor.busy
    assert len(done) == 1
    assert done[0].summaries[0].service == "a"

    assert executor.submit(BatchRequest(action="off", services=["b"]), other, done.append)
    executor.join(5)
    assert other.calls == [("off", "b", [])]


def test_unexpected_exception_does_not_stop_later_services():
    runner = FakeRunner({
        "a": RuntimeError("boom"),
        "b": UnicodeDecodeError("utf-8", b"\xe9", 0, 1, "invalid continuation byte"),
    })
    outcome = BatchExecutor().run(BatchRequest(action="on", services=["a", "b", "c"]), runner)

    assert [c[1] for c in runner.calls] == ["a", "b", "c"]
    assert [s.level for s in outcome.summaries] == [SummaryLevel.ERROR, SummaryLevel.ERROR, SummaryLevel.OK]
    assert "===== a =====\nERROR: RuntimeError: boom" in outcome.text
    assert "===== b =====\nERROR: UnicodeDecodeError" in outcome.text
    assert outcome.text.endswith("===== c =====\nc done")


def test_admin_prompt_batch_survives_undecodable_output(tmp_path):
    osascript = tmp_path / "osascript"
    osascript.write_text("#!/bin/sh\nprintf 'r\\351sultat\\rdone\\n'\n")
    osascript.chmod(0o755)
    backend = AdminPromptBackend(osascript_path=str(osascript))
    runner = CommandRunner(ScriptPaths(tmp_path), "password_prompt", AppConfig(), backend=backend)

    outcome = BatchExecutor().run(BatchRequest(action="on", services=["a", "b"]), runner)

    assert [s.service for s in outcome.summaries] == ["a", "b"]
    assert all(s.level is SummaryLevel.OK for s in outcome.summaries)
    assert "===== b =====\nr\ufffdsultat\ndone" in outcome.text


def test_submit_releases_latch_when_batch_aborts(monkeypatch):
    executor = BatchExecutor()
    done = []

    def broken_run(request, runner):
        raise RuntimeError("batch blew up")

    monkeypatch.setattr(executor, "run", broken_run)
    assert executor.submit(BatchRequest(action="on", services=["a"]), FakeRunner(), done.append)
    executor.join(5)
    assert not executor.busy
    assert done == []

    monkeypatch.undo()
    runner = FakeRunner()
    assert executor.submit(BatchRequest(action="off", services=["b"]), runner, done.append)
    executor.join(5)
    assert runner.calls == [("off", "b", [])]
    assert len(done) == 1

import logging
import threading
from typing import Callable, List, Optional, Protocol

from splitroute.core.classify import summarize_result
from splitroute.core.errors import ExecError
from splitroute.core.models import ActionKind, BatchOutcome, BatchRequest, CommandResult, SummaryItem

logger = logging.getLogger(__name__)

ACTION_TITLES = {
    "on": "ON",
    "off": "OFF",
    "refresh": "REFRESH",
    "status": "STATUS",
    "verify": "VERIFY",
}


class ServiceRunner(Protocol):
    def run(self, action: ActionKind, service: str, extra_args: List[str]) -> CommandResult:
        ...


def batch_title(action: ActionKind, services: List[str], label: Optional[str] = None) -> str:
    name = label or ACTION_TITLES[action]
    if len(services) == 1:
        return f"{name} — {services[0]}"
    return f"{name} — {len(services)} services"


class BatchExecutor:
    """
    Runs one action over a list of services, one service at a time.

    Elevation prompts must never overlap, so only one batch can be in flight
    per executor; submit() while busy does nothing.
    """

    def __init__(self):
        self._latch = threading.Lock()
        self._worker: Optional[threading.Thread] = None

    @property
    def busy(self) -> bool:
        return self._latch.locked()

    def run(self, request: BatchRequest, runner: ServiceRunner) -> BatchOutcome:
        combined = request.prefix
        summaries: List[SummaryItem] = []
        logger.info("batch %s start: %s", request.action, ", ".join(request.services))

        for svc in request.services:
            args = request.args_for(svc)
            try:
                result = runner.run(request.action, svc, args)
            except ExecError as e:
                logger.warning("%s %s failed: %s", request.action, svc, e)
                summaries.append(summarize_result(request.action, svc, e, args))
                body = f"ERROR: {e}"
            except Exception as e:
                logger.exception("%s %s crashed", request.action, svc)
                summaries.append(summarize_result(request.action, svc, e, args))
                body = f"ERROR: {type(e).__name__}: {e}"
            else:
                summaries.append(summarize_result(request.action, svc, result, args))
                body = result.output or "(no output)"

            if combined:
                if not combined.endswith("\n"):
                    combined += "\n"
                combined += "\n"
            combined += f"===== {svc} =====\n{body}"

        logger.info("batch %s done", request.action)
        return BatchOutcome(
            title=batch_title(request.action, request.services, request.label),
            text=combined or "(no output)",
            summaries=summaries,
        )

    def submit(
        self,
        request: BatchRequest,
        runner: ServiceRunner,
        on_complete: Callable[[BatchOutcome], None],
    ) -> bool:
        if not self._latch.acquire(blocking=False):
            logger.info("batch %s ignored: another batch is running", request.action)
            return False

        def _work() -> None:
            try:
                outcome = self.run(request, runner)
            except Exception:
                logger.exception("batch %s aborted", request.action)
                return
            finally:
                self._latch.release()
            on_complete(outcome)

        try:
            self._worker = threading.Thread(target=_work, name=f"batch-{request.action}", daemon=True)
            self._worker.start()
        except RuntimeError:
            self._latch.release()
            raise
        return True

    def join(self, timeout: Optional[float] = None) -> None:
        if self._worker is not None:
            self._worker.join(timeout)

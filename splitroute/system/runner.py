import logging
import time
from pathlib import Path
from typing import List, Optional

from splitroute.core.models import ActionKind, AppConfig, AuthMode, CommandResult
from splitroute.system.auth import AuthBackend, backend_for

logger = logging.getLogger(__name__)

ON_SCRIPT = "splitroute_on.sh"
OFF_SCRIPT = "splitroute_off.sh"
CHECK_SCRIPT = "splitroute_check.sh"
REPO_SEARCH_DEPTH = 8


class ScriptPaths:
    def __init__(self, repo_root: Path):
        self.repo_root = Path(repo_root)

    @property
    def scripts_dir(self) -> Path:
        return self.repo_root / "scripts"

    @property
    def services_dir(self) -> Path:
        return self.repo_root / "services"

    @property
    def on_script(self) -> Path:
        return self.scripts_dir / ON_SCRIPT

    @property
    def off_script(self) -> Path:
        return self.scripts_dir / OFF_SCRIPT

    @property
    def check_script(self) -> Path:
        return self.scripts_dir / CHECK_SCRIPT

    def script_for(self, action: ActionKind) -> Path:
        if action in ("on", "refresh"):
            return self.on_script
        if action == "off":
            return self.off_script
        if action in ("status", "verify"):
            return self.check_script
        raise ValueError(f"Unknown action: {action}")


def action_args(action: ActionKind) -> List[str]:
    if action == "status":
        return ["--no-curl"]
    return []


def verify_args(host: str) -> List[str]:
    return ["--no-curl", "--host", host]


def _is_repo_root(path: Path) -> bool:
    return (path / "scripts" / ON_SCRIPT).is_file()


def find_repo_root(cfg: AppConfig, start: Optional[Path] = None) -> Optional[Path]:
    if cfg.repo_root:
        root = Path(cfg.repo_root).expanduser()
        if _is_repo_root(root):
            return root

    p = Path(start or Path.cwd()).resolve()
    for _ in range(REPO_SEARCH_DEPTH):
        if _is_repo_root(p):
            return p
        if p.parent == p:
            break
        p = p.parent
    return None


class CommandRunner:
    """Runs one action for one service through the configured auth backend."""

    def __init__(self, paths: ScriptPaths, mode: AuthMode, cfg: AppConfig, backend: Optional[AuthBackend] = None):
        self.paths = paths
        self.mode = mode
        self.backend = backend or backend_for(mode, cfg)

    def run(self, action: ActionKind, service: str, extra_args: List[str]) -> CommandResult:
        script = self.paths.script_for(action)
        logger.info("%s %s via %s args=%s", action, service, self.mode, extra_args)
        started = time.monotonic()
        result = self.backend.execute(str(script), service, extra_args)
        logger.info(
            "%s %s finished exit=%s in %.1fs",
            action, service, result.exit_code, time.monotonic() - started,
        )
        return result

import logging
import subprocess
from pathlib import Path
from typing import Iterable, List, Optional, Protocol

from splitroute.core.errors import BridgeError, ElevationDenied
from splitroute.core.models import DEFAULT_SEARCH_PATH, AppConfig, AuthMode, CommandResult
from splitroute.system.supervisor import DEFAULT_TIMEOUT_S, PtySupervisor

logger = logging.getLogger(__name__)

PAM_SUDO_FILES = ("/etc/pam.d/sudo", "/etc/pam.d/sudo_local")


def shell_escape(s: str) -> str:
    return "'" + s.replace("'", "'\\''") + "'"


def applescript_escape(s: str) -> str:
    return s.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def build_shell_command(search_path: str, service: str, script_path: str, extra_args: Iterable[str]) -> str:
    tokens = [
        f"PATH={shell_escape(search_path)}",
        f"SERVICE={shell_escape(service)}",
        shell_escape(script_path),
    ]
    tokens += [shell_escape(a) for a in extra_args]
    tokens.append("2>&1")
    return " ".join(tokens)


def build_applescript(shell_command: str) -> str:
    return f'do shell script "{applescript_escape(shell_command)}" with administrator privileges without altering line endings'


class AuthBackend(Protocol):
    def execute(self, script_path: str, service: str, extra_args: List[str]) -> CommandResult:
        ...


class AdminPromptBackend:
    """macOS administrator dialog through osascript, one prompt per call."""

    def __init__(self, osascript_path: str = "/usr/bin/osascript", search_path: str = DEFAULT_SEARCH_PATH):
        self.osascript_path = osascript_path
        self.search_path = search_path

    def execute(self, script_path: str, service: str, extra_args: List[str]) -> CommandResult:
        shell_command = build_shell_command(self.search_path, service, script_path, extra_args)
        source = build_applescript(shell_command)
        logger.debug("osascript: %s", shell_command)

        # No timeout: the dialog waits on a person.
        try:
            proc = subprocess.run(
                [self.osascript_path, "-e", source],
                capture_output=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as e:
            raise BridgeError(f"Failed to run osascript: {e}") from e

        if proc.returncode != 0:
            message = (proc.stderr or "").strip() or "AppleScript error"
            if "-128" in message or "user canceled" in message.lower():
                raise ElevationDenied(message)
            raise BridgeError(message)

        # The bridge hides the script's own exit status.
        output = proc.stdout.replace("\r\n", "\n").replace("\r", "\n")
        if output.endswith("\n"):
            output = output[:-1]
        return CommandResult(exit_code=0, output=output)


class SudoPtyBackend:
    """sudo on a pseudo-terminal so pam_tid / password prompts can render."""

    def __init__(
        self,
        sudo_path: str = "/usr/bin/sudo",
        env_path: str = "/usr/bin/env",
        search_path: str = DEFAULT_SEARCH_PATH,
        timeout_seconds: float = DEFAULT_TIMEOUT_S,
        supervisor: Optional[PtySupervisor] = None,
    ):
        self.sudo_path = sudo_path
        self.env_path = env_path
        self.search_path = search_path
        self.timeout_seconds = timeout_seconds
        self.supervisor = supervisor or PtySupervisor()

    def argv(self, script_path: str, service: str, extra_args: List[str]) -> List[str]:
        return [
            self.sudo_path,
            "--",
            self.env_path,
            f"PATH={self.search_path}",
            f"SERVICE={service}",
            script_path,
            *extra_args,
        ]

    def execute(self, script_path: str, service: str, extra_args: List[str]) -> CommandResult:
        return self.supervisor.run(self.argv(script_path, service, extra_args), timeout_seconds=self.timeout_seconds)


def backend_for(mode: AuthMode, cfg: AppConfig) -> AuthBackend:
    if mode == "touchid_sudo":
        return SudoPtyBackend(
            sudo_path=cfg.sudo_path,
            env_path=cfg.env_path,
            search_path=cfg.search_path,
            timeout_seconds=cfg.timeout_seconds,
        )
    if mode == "password_prompt":
        return AdminPromptBackend(osascript_path=cfg.osascript_path, search_path=cfg.search_path)
    raise ValueError(f"Unknown auth mode: {mode}")


def sudo_pam_has_touch_id(paths: Iterable[str] = PAM_SUDO_FILES) -> bool:
    for p in paths:
        try:
            text = Path(p).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            continue
        for line in text.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "pam_tid.so" in line:
                return True
    return False


def default_auth_mode() -> AuthMode:
    return "touchid_sudo" if sudo_pam_has_touch_id() else "password_prompt"


def resolve_auth_mode(cfg: AppConfig) -> AuthMode:
    return cfg.auth_mode or default_auth_mode()

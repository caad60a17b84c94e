import re
from enum import IntEnum
from typing import Dict, Iterable, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

AuthMode = Literal["touchid_sudo", "password_prompt"]
ActionKind = Literal["on", "off", "refresh", "status", "verify"]

DEFAULT_SEARCH_PATH = "/usr/local/bin:/usr/bin:/bin:/usr/sbin:/sbin:/opt/homebrew/bin"

_SERVICE_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def validate_service_name(name: str) -> str:
    if not _SERVICE_RE.match(name or ""):
        raise ValueError(f"Invalid service name: {name!r}")
    return name


def dedupe(items: Iterable[str]) -> List[str]:
    seen = set()
    out = []
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        out.append(item)
    return out


class AppConfig(BaseModel):
    repo_root: Optional[str] = None
    # None means "detect from /etc/pam.d/sudo"
    auth_mode: Optional[AuthMode] = None
    # None means "every service under services/"
    selected_services: Optional[List[str]] = None
    timeout_seconds: float = 90.0
    search_path: str = DEFAULT_SEARCH_PATH
    sudo_path: str = "/usr/bin/sudo"
    env_path: str = "/usr/bin/env"
    osascript_path: str = "/usr/bin/osascript"
    # epoch seconds; set by "ON for N minutes", cleared by ON, OFF or cancel
    auto_off_deadline: Optional[float] = None
    auto_off_services: Optional[List[str]] = None


class CommandResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    exit_code: int
    output: str = ""


class SummaryLevel(IntEnum):
    OK = 0
    WARN = 1
    ERROR = 2

    @property
    def label(self) -> str:
        return {SummaryLevel.OK: "OK", SummaryLevel.WARN: "WARNING", SummaryLevel.ERROR: "PROBLEM"}[self]


class SummaryItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    service: str
    level: SummaryLevel
    message: str


def worst_level(items: Iterable[SummaryItem]) -> SummaryLevel:
    return max((i.level for i in items), default=SummaryLevel.OK)


class CheckAnalysis(BaseModel):
    wifi_if: Optional[str] = None
    wifi_status: Optional[str] = None
    wifi_status_line_seen: bool = False
    gw4: Optional[str] = None
    gw4_line_seen: bool = False
    gw4_missing: bool = False
    total_routes: int = 0
    ok_count: int = 0
    not_routed_count: int = 0
    no_dns_count: int = 0
    no_v6_count: int = 0
    hotspot_down_count: int = 0
    other_statuses: Dict[str, int] = Field(default_factory=dict)
    dns_blocked: bool = False

    @property
    def hotspot_down(self) -> bool:
        if self.hotspot_down_count > 0:
            return True
        if self.gw4_line_seen and self.gw4_missing:
            return True
        return self.wifi_status is not None and self.wifi_status != "active"


class BatchRequest(BaseModel):
    action: ActionKind
    services: List[str]
    # per-service args win over default_args
    extra_args: Dict[str, List[str]] = Field(default_factory=dict)
    default_args: List[str] = Field(default_factory=list)
    prefix: str = ""
    # replaces the action name in the report title
    label: Optional[str] = None

    @field_validator("services")
    @classmethod
    def _ordered_unique(cls, v: List[str]) -> List[str]:
        return dedupe(validate_service_name(s) for s in v)

    def args_for(self, service: str) -> List[str]:
        if service in self.extra_args:
            return list(self.extra_args[service])
        return list(self.default_args)


class BatchOutcome(BaseModel):
    title: str = ""
    text: str = ""
    summaries: List[SummaryItem] = Field(default_factory=list)

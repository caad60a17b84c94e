"""
Turn the text a routing script printed into one (level, message) per service.

splitroute_check.sh prints a few status lines (WIFI_IF=..., GW4(...)=...) and
then a "== Route table check" section whose rows end with a status code:

    host            family  ip              iface  gateway        status
    example.com     v4      93.184.216.34   en0    172.20.10.1    OK

Output comes through a pty or AppleScript, so lines may carry \\r and ANSI
colour codes.
"""
import re
from typing import List, Optional, Tuple, Union

from splitroute.core.errors import ExecError, ScriptReportedFailure
from splitroute.core.models import ActionKind, CheckAnalysis, CommandResult, SummaryItem, SummaryLevel

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")
_FIELD_SPLIT_RE = re.compile(r"[ \t]+")
_LINE_SPLIT_RE = re.compile(r"\r\n|\r|\n")

ROUTE_SECTION_TITLE = "Route table check"
GATEWAY_PLACEHOLDERS = ("<brak>", "none", "<none>")
DNS_BLOCK_PREFIX = "146.112.61."

HOTSPOT_DOWN_MESSAGE = "Wi-Fi hotspot is not connected."
UNREADABLE_MESSAGE = "Could not read the test result."
NO_DNS_MESSAGE = "Could not resolve the address of this site (DNS)."
NOT_ROUTED_MESSAGE = "Traffic is not going through the hotspot."
WORKING_MESSAGE = "Working."
WORKING_V4_ONLY_MESSAGE = "Working (IPv4). IPv6 unavailable."
V6_ONLY_MESSAGE = "IPv6 unavailable, no IPv4 confirmed."
NO_DATA_MESSAGE = "No reliable routing data."
GENERIC_FAILURE_MESSAGE = "Command finished with an error."

# (markers, message); scripts print English or Polish depending on version
FAILURE_MARKERS: List[Tuple[Tuple[str, ...], str]] = [
    (("missing hosts file", "brak pliku"), "Missing hosts.txt for this service. Check services/<name>."),
    (("bramy ipv4", "no ipv4 gateway"), "No hotspot gateway. Connect to the Wi-Fi hotspot and try again."),
    (("run with sudo",), "Missing administrator privileges (sudo)."),
    (("niepraw", "invalid service"), "Invalid service name."),
    (("unknown command",), "The script did not recognise the command."),
]

ACTION_MESSAGES = {
    "on": "Rules enabled (this service's traffic should go through the hotspot).",
    "off": "Rules disabled (traffic is back on the default route).",
    "refresh": "Rules refreshed (host IPs renewed).",
}


def sanitize_line(line: str) -> str:
    return _ANSI_RE.sub("", line.replace("\r", ""))


def analyze_check_output(output: str) -> CheckAnalysis:
    analysis = CheckAnalysis()
    lines = [sanitize_line(ln) for ln in _LINE_SPLIT_RE.split(output)]

    # Headerless output is a bare route table.
    in_route = not any(ln.startswith("== ") for ln in lines)

    for line in lines:
        if line.startswith("== "):
            in_route = ROUTE_SECTION_TITLE in line
            continue

        if line.startswith("WIFI_IF="):
            analysis.wifi_status_line_seen = True
            rest = line.split("=", 1)[1].split(" ")
            analysis.wifi_if = rest[0] or None
            if "status: " in line:
                after = line.split("status: ", 1)[1]
                if ")" in after:
                    analysis.wifi_status = after.split(")", 1)[0]

        if line.startswith("GW4("):
            analysis.gw4_line_seen = True
            if "=" in line:
                gw = line.split("=", 1)[1].strip()
                if not gw or gw.lower() in GATEWAY_PLACEHOLDERS:
                    analysis.gw4_missing = True
                else:
                    analysis.gw4 = gw

        if DNS_BLOCK_PREFIX in line:
            analysis.dns_blocked = True

        if not in_route:
            continue
        parts = [p for p in _FIELD_SPLIT_RE.split(line) if p]
        if len(parts) < 6:
            continue
        status = parts[-1]
        if status == "status":
            continue

        analysis.total_routes += 1
        if status == "OK":
            analysis.ok_count += 1
        elif status == "NO_DNS":
            analysis.no_dns_count += 1
        elif status == "HOTSPOT_DOWN":
            analysis.hotspot_down_count += 1
        elif status.startswith("NO_V6_ON_"):
            analysis.no_v6_count += 1
        elif status.startswith("NOT_"):
            analysis.not_routed_count += 1
        else:
            analysis.other_statuses[status] = analysis.other_statuses.get(status, 0) + 1

    return analysis


def hotspot_down_message(analysis: CheckAnalysis) -> str:
    parts = [HOTSPOT_DOWN_MESSAGE]
    if analysis.wifi_status is not None:
        parts.append(f"Wi-Fi {analysis.wifi_if or 'interface'} status: {analysis.wifi_status}.")
    if analysis.gw4 is not None:
        parts.append(f"GW4: {analysis.gw4}.")
    parts.append("Connect to the hotspot and run REFRESH.")
    return " ".join(parts)


def summarize_check_output(output: str) -> Tuple[SummaryLevel, str]:
    a = analyze_check_output(output)

    if a.total_routes == 0:
        if a.hotspot_down:
            return SummaryLevel.ERROR, hotspot_down_message(a)
        return SummaryLevel.WARN, UNREADABLE_MESSAGE
    if a.hotspot_down:
        return SummaryLevel.ERROR, hotspot_down_message(a)
    if a.no_dns_count > 0:
        return SummaryLevel.ERROR, NO_DNS_MESSAGE
    if a.not_routed_count > 0:
        return SummaryLevel.ERROR, NOT_ROUTED_MESSAGE
    if a.ok_count > 0:
        if a.no_v6_count > 0:
            return SummaryLevel.OK, WORKING_V4_ONLY_MESSAGE
        return SummaryLevel.OK, WORKING_MESSAGE
    if a.no_v6_count > 0:
        return SummaryLevel.WARN, V6_ONLY_MESSAGE
    return SummaryLevel.WARN, NO_DATA_MESSAGE


def failure_message(output: str) -> Optional[str]:
    lower = output.lower()
    for markers, message in FAILURE_MARKERS:
        if any(m in lower for m in markers):
            return message
    return None


def check_script_result(result: CommandResult) -> None:
    msg = failure_message(result.output)
    if msg is not None:
        raise ScriptReportedFailure(msg)
    if result.exit_code != 0:
        raise ScriptReportedFailure(GENERIC_FAILURE_MESSAGE)


def extract_host(args: List[str]) -> Optional[str]:
    if "--host" not in args:
        return None
    i = args.index("--host")
    if i + 1 < len(args):
        return args[i + 1]
    return None


def summarize_result(
    action: ActionKind,
    service: str,
    result: Union[CommandResult, Exception],
    extra_args: Optional[List[str]] = None,
) -> SummaryItem:
    if isinstance(result, ExecError):
        return SummaryItem(service=service, level=SummaryLevel.ERROR, message=f"Could not run the command: {result}")
    if isinstance(result, Exception):
        return SummaryItem(service=service, level=SummaryLevel.ERROR, message=f"Unexpected error: {type(result).__name__}: {result}")

    try:
        check_script_result(result)
    except ScriptReportedFailure as e:
        return SummaryItem(service=service, level=SummaryLevel.ERROR, message=str(e))

    if action in ("status", "verify"):
        level, message = summarize_check_output(result.output)
        host = extract_host(extra_args or [])
        if host:
            message = f"Checked: {host}. {message}"
        return SummaryItem(service=service, level=level, message=message)

    return SummaryItem(service=service, level=SummaryLevel.OK, message=ACTION_MESSAGES[action])

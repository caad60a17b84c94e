from pathlib import Path
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse

from splitroute.core.models import AppConfig
from splitroute.system.runner import verify_args

_DOMAIN_CHARS = set("abcdefghijklmnopqrstuvwxyz0123456789.-")


def list_services(services_dir: Path) -> List[str]:
    try:
        entries = list(Path(services_dir).iterdir())
    except OSError:
        return []
    names = [
        p.name for p in entries
        if p.is_dir() and not p.name.startswith(".") and not p.name.startswith("_")
    ]
    return sorted(names)


def selected_services(cfg: AppConfig, all_services: List[str]) -> List[str]:
    if cfg.selected_services is None:
        return list(all_services)
    stored = set(cfg.selected_services)
    return [s for s in all_services if s in stored]


def _first_host_line(path: Path) -> Optional[str]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError:
        return None
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        return line.split()[0]
    return None


def primary_host_for_service(service: str, services_dir: Path) -> Optional[str]:
    d = Path(services_dir) / service
    return _first_host_line(d / "dns_domains.txt") or _first_host_line(d / "hosts.txt")


def verify_targets(services: List[str], services_dir: Path) -> Tuple[Dict[str, List[str]], List[str]]:
    """Per-service check args for services that have a host, plus the ones skipped."""
    targets: Dict[str, List[str]] = {}
    skipped: List[str] = []
    for svc in services:
        host = primary_host_for_service(svc, services_dir)
        if host:
            targets[svc] = verify_args(host)
        else:
            skipped.append(svc)
    return targets, skipped


def normalize_domain_input(raw: str) -> Optional[str]:
    """
    "https://www.Example.com/path" -> "example.com".
    Returns None when nothing domain-like is left.
    """
    trimmed = raw.strip()
    if not trimmed:
        return None

    candidate = trimmed if "://" in trimmed else f"https://{trimmed}"
    try:
        host = urlparse(candidate).hostname
    except ValueError:
        host = None
    if not host:
        host = trimmed.split("/")[0]

    value = host.lower()
    if value.startswith("www."):
        value = value[4:]
    value = value.strip(".")
    if not value or not set(value) <= _DOMAIN_CHARS:
        return None
    return value


def create_service_files(service_dir: Path, base_domain: str) -> None:
    service_dir.mkdir(parents=True, exist_ok=True)

    hosts = ["# core", base_domain, f"www.{base_domain}"]
    (service_dir / "hosts.txt").write_text("\n".join(hosts) + "\n", encoding="utf-8")
    (service_dir / "dns_domains.txt").write_text(f"{base_domain}\n", encoding="utf-8")

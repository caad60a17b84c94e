import logging
import os
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from fastapi import FastAPI, Form, HTTPException
from fastapi.responses import RedirectResponse, PlainTextResponse
from pydantic import ValidationError

from splitroute.core.config import load_config, save_config
from splitroute.core.models import AppConfig, BatchOutcome, BatchRequest, validate_service_name, worst_level
from splitroute.core.report import format_report
from splitroute.system.auth import resolve_auth_mode
from splitroute.system.autooff import (
    BUSY_RETRY_S,
    AutoOffTimer,
    due_services,
    seconds_until_end_of_day,
    set_auto_off,
)
from splitroute.system.batch import ACTION_TITLES, BatchExecutor
from splitroute.system.reset import reset_config, factory_defaults
from splitroute.system.runner import CommandRunner, ScriptPaths, action_args, find_repo_root
from splitroute.system.services import (
    create_service_files,
    list_services,
    normalize_domain_input,
    selected_services,
    verify_targets,
)

logging.basicConfig(
    level=os.environ.get("SPLITROUTE_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

executor = BatchExecutor()

# Only the most recent report is kept, in memory.
_last: Dict[str, Optional[BatchOutcome]] = {"outcome": None}


def _store_outcome(outcome: BatchOutcome) -> None:
    _last["outcome"] = outcome


def make_runner(paths: ScriptPaths, cfg: AppConfig) -> CommandRunner:
    return CommandRunner(paths, resolve_auth_mode(cfg), cfg)


def _paths(cfg: AppConfig) -> ScriptPaths:
    root = find_repo_root(cfg)
    if root is None:
        raise HTTPException(status_code=409, detail="Repository root not found. Set it with POST /repo.")
    return ScriptPaths(root)


def _dispatch(
    cfg: AppConfig,
    paths: ScriptPaths,
    action: str,
    services: List[str],
    extra_args: Optional[Dict[str, List[str]]] = None,
    prefix: str = "",
    label: Optional[str] = None,
) -> bool:
    try:
        req = BatchRequest(
            action=action,
            services=services,
            extra_args=extra_args or {},
            default_args=action_args(action),
            prefix=prefix,
            label=label,
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return executor.submit(req, make_runner(paths, cfg), _store_outcome)


def _select(cfg: AppConfig, paths: ScriptPaths, wanted: List[str]) -> None:
    wanted_set = set(wanted)
    cfg.selected_services = [s for s in list_services(paths.services_dir) if s in wanted_set]
    save_config(cfg)


def _selected_or_400(cfg: AppConfig, paths: ScriptPaths) -> List[str]:
    services = selected_services(cfg, list_services(paths.services_dir))
    if not services:
        raise HTTPException(status_code=400, detail="No services selected.")
    return services


def _set_auto_off(cfg: AppConfig, deadline: Optional[float], services: Optional[List[str]]) -> None:
    set_auto_off(cfg, deadline, services)
    save_config(cfg)
    auto_off.reschedule(cfg)


def check_auto_off(reason: str) -> bool:
    """Turn the auto-off services OFF if their deadline has passed."""
    cfg = load_config()
    services = due_services(cfg)
    if services is None:
        return False

    root = find_repo_root(cfg)
    try:
        req = BatchRequest(action="off", services=services, label=f"Auto-OFF ({reason})")
    except ValidationError as e:
        logger.warning("auto-off dropped, bad service list: %s", e)
        _set_auto_off(cfg, None, None)
        return False
    if not req.services or root is None:
        logger.warning("auto-off dropped: %s", "repository root not found" if req.services else "no services")
        _set_auto_off(cfg, None, None)
        return False

    if not executor.submit(req, make_runner(ScriptPaths(root), cfg), _store_outcome):
        logger.info("auto-off (%s) deferred, another batch is running", reason)
        auto_off.arm(BUSY_RETRY_S, reason)
        return False
    logger.info("auto-off (%s): %s", reason, ", ".join(req.services))
    _set_auto_off(cfg, None, None)
    return True


auto_off = AutoOffTimer(check_auto_off)


@asynccontextmanager
async def lifespan(app: FastAPI):
    check_auto_off("launch")
    auto_off.reschedule(load_config())
    yield
    auto_off.cancel()


app = FastAPI(lifespan=lifespan)


@app.get("/")
def status():
    # Timers stall while the machine sleeps; the wall clock does not.
    check_auto_off("status")
    cfg = load_config()
    root = find_repo_root(cfg)
    services = list_services(ScriptPaths(root).services_dir) if root else []
    last = _last["outcome"]
    return {
        "repo_root": str(root) if root else None,
        "auth_mode": resolve_auth_mode(cfg),
        "services": services,
        "selected": selected_services(cfg, services),
        "busy": executor.busy,
        "last_report": last.title if last else None,
        "last_level": worst_level(last.summaries).label if last else None,
        "auto_off_deadline": cfg.auto_off_deadline,
        "auto_off_services": cfg.auto_off_services,
    }


@app.post("/repo")
def set_repo(path: str = Form(...)):
    cfg = load_config()
    root = Path(path).expanduser()
    if not ScriptPaths(root).on_script.is_file():
        raise HTTPException(status_code=400, detail=f"{root} does not contain scripts/splitroute_on.sh")
    cfg.repo_root = str(root)
    save_config(cfg)
    return RedirectResponse("/", status_code=303)


@app.post("/services/select")
def select_services(services: List[str] = Form([])):
    cfg = load_config()
    _select(cfg, _paths(cfg), services)
    return RedirectResponse("/", status_code=303)


@app.post("/services/add")
def add_service(domain: str = Form(...)):
    cfg = load_config()
    paths = _paths(cfg)
    name = normalize_domain_input(domain)
    if name is None:
        raise HTTPException(status_code=400, detail="Enter a domain like example.com or www.example.com.")
    try:
        validate_service_name(name)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    service_dir = paths.services_dir / name
    if not service_dir.exists():
        create_service_files(service_dir, name)
        logger.info("created service %s", name)

    all_services = list_services(paths.services_dir)
    _select(cfg, paths, selected_services(cfg, all_services) + [name])
    _dispatch(cfg, paths, "on", [name])
    return RedirectResponse("/", status_code=303)


@app.post("/auth-mode")
def set_auth_mode(mode: str = Form(...)):
    cfg = load_config()
    try:
        updated = AppConfig.model_validate({**cfg.model_dump(), "auth_mode": mode})
    except ValidationError:
        raise HTTPException(status_code=400, detail=f"Unknown auth mode: {mode}")
    save_config(updated)
    return RedirectResponse("/", status_code=303)


@app.post("/actions/reset")
def do_reset():
    reset_config()
    auto_off.cancel()
    return RedirectResponse("/", status_code=303)


@app.post("/actions/factory")
def do_factory():
    factory_defaults()
    auto_off.cancel()
    return RedirectResponse("/", status_code=303)


@app.get("/actions/last", response_class=PlainTextResponse)
def last_report():
    outcome = _last["outcome"]
    if outcome is None:
        raise HTTPException(status_code=404, detail="No report yet")
    return f"{outcome.title}\n\n{format_report(outcome.summaries, outcome.text)}\n"


@app.post("/actions/on-for")
def run_on_for(minutes: float = Form(0), until_end_of_day: bool = Form(False)):
    seconds = seconds_until_end_of_day() if until_end_of_day else minutes * 60
    if seconds <= 0:
        raise HTTPException(status_code=400, detail="Give a positive number of minutes or until_end_of_day.")
    cfg = load_config()
    paths = _paths(cfg)
    services = _selected_or_400(cfg, paths)
    if _dispatch(cfg, paths, "on", services, label="ON (auto-off)"):
        _set_auto_off(cfg, time.time() + seconds, services)
    return RedirectResponse("/", status_code=303)


@app.post("/actions/cancel-auto-off")
def cancel_auto_off():
    _set_auto_off(load_config(), None, None)
    return RedirectResponse("/", status_code=303)


@app.post("/actions/{action}")
def run_action(action: str):
    if action not in ACTION_TITLES:
        raise HTTPException(status_code=404, detail=f"Unknown action: {action}")
    cfg = load_config()
    paths = _paths(cfg)
    services = _selected_or_400(cfg, paths)
    if action in ("on", "off"):
        _set_auto_off(cfg, None, None)

    if action == "verify":
        targets, skipped = verify_targets(services, paths.services_dir)
        if not targets:
            raise HTTPException(status_code=400, detail="No hosts found in dns_domains.txt or hosts.txt for selected services.")
        prefix = f"SKIPPED (no hosts): {', '.join(skipped)}\n" if skipped else ""
        ordered = [s for s in services if s in targets]
        _dispatch(cfg, paths, action, ordered, extra_args=targets, prefix=prefix)
    else:
        _dispatch(cfg, paths, action, services)
    return RedirectResponse("/", status_code=303)


@app.get("/api/config.yaml", response_class=PlainTextResponse)
def get_config_yaml():
    cfg = load_config()
    return yaml.safe_dump(cfg.model_dump(), sort_keys=False)

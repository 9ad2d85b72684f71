#!/usr/bin/env python3
# OpenStack inventory report
# + XLSX export (named tables, formula-driven summary sheets)
# + CSV export
# Includes:
#   Servers (with flavor name / RAM / vCPUs / disk), Volumes
# Across every configured endpoint and every project of each endpoint.
# Rows are flattened per project, then normalized once across the
# whole run so every row of a kind carries the same columns.

import argparse
import logging
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import requests
from dotenv import load_dotenv

from osr_common import (
    ERRORS, log_error, reset_errors, now_utc_str,
    new_session, get_project_token,
    get_projects, get_flavors, get_servers, get_volumes,
)
from osr_config import ConfigValidator, EndpointConfig, ReportConfig
from osr_flatten import SERVER, VOLUME, flatten_server, flatten_volume, reconcile
from osr_logging import context, prefix, setup_logging
from osr_report import open_report, write_report

log = logging.getLogger("osr.main")

SessionFactory = Callable[[], requests.Session]


@dataclass
class ProjectResult:
    domain: str
    project: str
    servers: List[Dict[str, Any]] = field(default_factory=list)
    volumes: List[Dict[str, Any]] = field(default_factory=list)
    ok: bool = True


def session_factory_for(config: ReportConfig) -> SessionFactory:
    def factory() -> requests.Session:
        return new_session(verify_tls=config.verify_tls, retries=config.retries)
    return factory


# ------------------------------------------------------------------
# Per project
# ------------------------------------------------------------------

def process_project(
    config: ReportConfig,
    endpoint: EndpointConfig,
    project_name: str,
    session_factory: Optional[SessionFactory] = None,
) -> ProjectResult:
    """
    Authenticate into one project, fetch its flavors/servers/volumes
    concurrently and flatten them.
    """
    factory = session_factory or session_factory_for(config)
    ctx = context(endpoint.domain, project_name, endpoint=endpoint.endpoint)
    result = ProjectResult(endpoint.domain, project_name)
    started = time.monotonic()
    log.info("Processing project...", extra=ctx)

    session = factory()
    try:
        token = get_project_token(
            session, endpoint.endpoint, endpoint.domain,
            config.username, config.password, project_name,
            timeout=config.request_timeout,
        )
    finally:
        session.close()
    if not token:
        log.error("Failed to get project token", extra=ctx)
        result.ok = False
        return result

    def fetch(fn):
        s = factory()
        try:
            return fn(s, endpoint.endpoint, token,
                      timeout=config.request_timeout, page_limit=config.page_limit)
        finally:
            s.close()

    calls = {}
    if config.want_servers:
        calls["flavors"] = get_flavors
        calls["servers"] = get_servers
    if config.want_volumes:
        calls["volumes"] = get_volumes

    with ThreadPoolExecutor(max_workers=len(calls)) as pool:
        futures = {name: pool.submit(fetch, fn) for name, fn in calls.items()}
        fetched = {name: f.result() for name, f in futures.items()}

    if config.want_servers:
        flavors = fetched["flavors"]
        servers = fetched["servers"]
        if not flavors.ok:
            log.warning("Flavors unavailable, servers keep empty flavor columns",
                        extra=dict(ctx, kind="flavors"))
        else:
            log.info("Found %d flavors", len(flavors.items), extra=dict(ctx, kind="flavors"))

        if not servers.ok:
            result.ok = False
        elif servers.items:
            log.info("Found %d servers", len(servers.items), extra=dict(ctx, kind=SERVER))
            result.servers = [
                flatten_server(s, flavors.items, endpoint.domain, project_name)
                for s in servers.items
            ]
        else:
            log.info("No servers found", extra=dict(ctx, kind=SERVER))

    if config.want_volumes:
        volumes = fetched["volumes"]
        if not volumes.ok:
            result.ok = False
        elif volumes.items:
            log.info("Found %d volumes", len(volumes.items), extra=dict(ctx, kind=VOLUME))
            result.volumes = [
                flatten_volume(v, endpoint.domain, project_name)
                for v in volumes.items
            ]
        else:
            log.info("No volumes found", extra=dict(ctx, kind=VOLUME))

    elapsed_ms = int((time.monotonic() - started) * 1000)
    log.debug("Project done", extra=dict(ctx, duration_ms=elapsed_ms))
    return result


def _process_project_guarded(config, endpoint, project_name, session_factory) -> ProjectResult:
    try:
        return process_project(config, endpoint, project_name, session_factory)
    except Exception as e:
        log.exception("Error processing project", extra=context(endpoint.domain, project_name))
        log_error("project", f"{prefix(endpoint.domain, project_name)} {e}")
        return ProjectResult(endpoint.domain, project_name, ok=False)


# ------------------------------------------------------------------
# Per endpoint
# ------------------------------------------------------------------

def discover_projects(
    config: ReportConfig,
    endpoint: EndpointConfig,
    session_factory: Optional[SessionFactory] = None,
) -> Optional[List[str]]:
    """Project names to process, or None when the endpoint is unusable."""
    if endpoint.projects:
        return list(endpoint.projects)

    factory = session_factory or session_factory_for(config)
    ctx = context(endpoint.domain, endpoint=endpoint.endpoint)
    session = factory()
    try:
        token = get_project_token(
            session, endpoint.endpoint, endpoint.domain,
            config.username, config.password, endpoint.initial_project,
            timeout=config.request_timeout,
        )
        if not token:
            msg = f"Failed to get token for initial project {endpoint.initial_project}, skipping endpoint"
            log.error(msg, extra=ctx)
            log_error("endpoint", f"{prefix(endpoint.domain)} {msg}")
            return None

        projects = get_projects(session, endpoint.endpoint, token, timeout=config.request_timeout)
    finally:
        session.close()

    if not projects.ok:
        msg = "Failed to get projects, skipping endpoint"
        log.error(msg, extra=ctx)
        log_error("endpoint", f"{prefix(endpoint.domain)} {msg}")
        return None

    names = []
    for p in projects.items:
        name = p.get("name")
        if not name:
            continue
        if p.get("enabled") is False:
            log.info("Skipping disabled project %s", name, extra=ctx)
            continue
        names.append(name)
    return names


def collect_endpoint(
    config: ReportConfig,
    endpoint: EndpointConfig,
    session_factory: Optional[SessionFactory] = None,
) -> List[ProjectResult]:
    ctx = context(endpoint.domain, endpoint=endpoint.endpoint)
    log.info("Processing endpoint: %s", endpoint.endpoint, extra=ctx)

    names = discover_projects(config, endpoint, session_factory)
    if not names:
        if names is not None:
            log.warning("No projects to process", extra=ctx)
        return []

    if config.parallelism == "concurrent" and len(names) > 1:
        workers = min(config.max_workers, len(names))
        log.info("Processing %d project(s) with %d workers...", len(names), workers, extra=ctx)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(
                lambda name: _process_project_guarded(config, endpoint, name, session_factory),
                names,
            ))
    else:
        log.info("Processing %d project(s) sequentially...", len(names), extra=ctx)
        results = [_process_project_guarded(config, endpoint, name, session_factory) for name in names]

    n_servers = sum(len(r.servers) for r in results)
    n_volumes = sum(len(r.volumes) for r in results)
    log.info("Completed %d projects: %d servers, %d volumes", len(names), n_servers, n_volumes, extra=ctx)
    return results


# ------------------------------------------------------------------
# Main
# ------------------------------------------------------------------

def run(config: ReportConfig, session_factory: Optional[SessionFactory] = None) -> int:
    """Collect, normalize and write one report. Returns the process exit code."""
    reset_errors()
    log.info("Starting OpenStack resource collection for %d endpoint(s)", len(config.endpoints))

    results: List[ProjectResult] = []
    for endpoint in config.endpoints:
        results.extend(collect_endpoint(config, endpoint, session_factory))

    raw_servers = [s for r in results for s in r.servers]
    raw_volumes = [v for r in results for v in r.volumes]

    servers = reconcile(raw_servers, SERVER)
    volumes = reconcile(raw_volumes, VOLUME)

    if not servers and not volumes:
        log.error("No resources found")
        return 1

    summary = {
        "Generated_UTC": now_utc_str(),
        "Endpoints": len(config.endpoints),
        "Projects": len(results),
        "Projects_Incomplete": sum(1 for r in results if not r.ok),
        "Servers": len(servers),
        "Volumes": len(volumes),
        "Errors": len(ERRORS),
        "Resources": config.resources,
        "Parallelism": config.parallelism,
    }

    paths = write_report(
        servers, volumes,
        output_format=config.output_format,
        output_dir=config.output_dir,
        summary=summary,
        errors=list(ERRORS),
    )

    if config.open_report and config.output_format == "xlsx" and paths:
        open_report(paths[0])

    log.info("Process completed successfully (%d servers, %d volumes, %d errors)",
             len(servers), len(volumes), len(ERRORS))
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="OpenStack servers/volumes inventory report")
    parser.add_argument("--env-file", help="Alternate .env file (default: .env next to this script)")
    args = parser.parse_args(argv)

    # Real environment variables win over the file
    env_file = Path(args.env_file) if args.env_file else Path(__file__).parent / ".env"
    if env_file.exists():
        load_dotenv(env_file, override=False)

    config, errors, warnings = ConfigValidator.build()
    ConfigValidator.print_validation_results(not errors, errors, warnings)
    if errors:
        return 1

    setup_logging(config.log_level, config.json_logs, config.log_file)
    return run(config)


if __name__ == "__main__":
    sys.exit(main())

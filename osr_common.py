#!/usr/bin/env python3
"""
Common helpers for the OpenStack inventory report
Keystone auth, Nova/Cinder listings and the run-wide error ledger
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from osr_logging import context, prefix

log = logging.getLogger("osr.api")

# --------------------------------------------------------------------
# API paths (relative to an endpoint base URL)
# --------------------------------------------------------------------

TOKENS_PATH = "/identity/v3/auth/tokens"
PROJECTS_PATH = "/identity/v3/auth/projects"
FLAVORS_PATH = "/compute/v2.1/flavors/detail"
SERVERS_PATH = "/compute/v2.1/servers/detail"
VOLUMES_PATH = "/compute/v2.1/os-volumes/detail"

RETRY_STATUSES = (408, 413, 429, 500, 502, 503, 504)

DEFAULT_TIMEOUT = 60
DEFAULT_RETRIES = 2

ERRORS: List[Dict[str, Any]] = []
_errors_lock = threading.Lock()


# --------------------------------------------------------------------
# General Helpers
# --------------------------------------------------------------------


def now_utc_str() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%SZ")


def ts_utc() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")


def log_error(area: str, msg: str) -> None:
    with _errors_lock:
        ERRORS.append(
            {
                "time_utc": now_utc_str(),
                "area": area,
                "msg": msg,
            }
        )


def reset_errors() -> None:
    with _errors_lock:
        ERRORS.clear()


@dataclass
class FetchResult:
    """
    Outcome of one listing call.

    status is "ok" (items present), "empty" (call succeeded, nothing
    listed) or "error" (transport/auth/decode failure, see `error`).
    """
    status: str
    items: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != "error"

    @classmethod
    def from_items(cls, items: List[Dict[str, Any]]) -> "FetchResult":
        return cls("ok" if items else "empty", list(items))

    @classmethod
    def failed(cls, error: str) -> "FetchResult":
        return cls("error", [], error)


# --------------------------------------------------------------------
# HTTP / API Helpers
# --------------------------------------------------------------------


def new_session(
    verify_tls: bool = True,
    retries: int = DEFAULT_RETRIES,
) -> requests.Session:
    """
    Session with a fixed transport-level retry count.
    Only GETs are retried; token requests are sent once.
    """
    s = requests.Session()
    s.verify = verify_tls
    retry = Retry(
        total=retries,
        connect=retries,
        read=retries,
        status=retries,
        backoff_factor=0.3,
        status_forcelist=RETRY_STATUSES,
        allowed_methods=frozenset(["GET"]),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry)
    s.mount("https://", adapter)
    s.mount("http://", adapter)
    return s


def _is_success(resp) -> bool:
    return 200 <= resp.status_code < 300


def _body_excerpt(resp, limit: int = 300) -> str:
    try:
        return (resp.text or "")[:limit]
    except Exception:
        return ""


def paginate(
    session: requests.Session,
    url: str,
    key: str,
    token: str,
    page_limit: int,
    timeout: int = DEFAULT_TIMEOUT,
) -> List[Dict[str, Any]]:
    """
    Generic helper for limit/marker style pagination.
    Assumes responses look like { key: [...], ... }.
    Raises requests.HTTPError on a failed page.
    """
    out: List[Dict[str, Any]] = []
    marker: Optional[str] = None
    while True:
        params: Dict[str, Any] = {"limit": page_limit}
        if marker:
            params["marker"] = marker
        resp = session.get(url, headers={"X-Auth-Token": token}, params=params, timeout=timeout)
        if not _is_success(resp):
            raise requests.HTTPError(
                f"HTTP {resp.status_code} from {url}: {_body_excerpt(resp)}", response=resp
            )
        data = resp.json() if resp.content else {}
        items = data.get(key) or []
        out.extend(items)
        if len(items) < page_limit:
            break
        marker = items[-1].get("id")
        if not marker:
            break
    return out


def fetch_listing(
    session: requests.Session,
    endpoint: str,
    path: str,
    key: str,
    token: str,
    area: str,
    timeout: int = DEFAULT_TIMEOUT,
    page_limit: int = 0,
) -> FetchResult:
    """
    GET one listing and unwrap `key`. Never raises: HTTP statuses,
    transport errors and undecodable bodies all come back as
    FetchResult.failed() and are recorded in the error ledger.
    """
    url = endpoint.rstrip("/") + path
    status_code = None
    try:
        if page_limit > 0:
            return FetchResult.from_items(paginate(session, url, key, token, page_limit, timeout))

        resp = session.get(url, headers={"X-Auth-Token": token}, timeout=timeout)
        status_code = resp.status_code
        if not _is_success(resp):
            msg = f"Failed to get {key} from {endpoint}. Status: {resp.status_code} {_body_excerpt(resp)}".rstrip()
        else:
            data = resp.json() if resp.content else {}
            items = data.get(key) if isinstance(data, dict) else None
            if items is not None:
                return FetchResult.from_items(items)
            msg = f"Response from {url} has no '{key}' list"
    except requests.Timeout as e:
        msg = f"Timed out after {timeout}s getting {key} from {endpoint}: {e}"
    except requests.RequestException as e:
        if e.response is not None:
            status_code = e.response.status_code
        msg = f"Error getting {key} from {endpoint}: {e}"
    except ValueError as e:
        msg = f"Invalid JSON getting {key} from {endpoint}: {e}"
    log.error(msg, extra=context(endpoint=endpoint, kind=key, status_code=status_code))
    log_error(area, msg)
    return FetchResult.failed(msg)


# --------------------------------------------------------------------
# Keystone Auth
# --------------------------------------------------------------------


def build_auth_payload(domain: str, username: str, password: str, project_name: str) -> Dict[str, Any]:
    """Password grant, user and project both resolved in `domain`."""
    return {
        "auth": {
            "identity": {
                "methods": ["password"],
                "password": {
                    "user": {
                        "name": username,
                        "domain": {"name": domain},
                        "password": password,
                    }
                },
            },
            "scope": {
                "project": {
                    "name": project_name,
                    "domain": {"name": domain},
                }
            },
        }
    }


def get_project_token(
    session: requests.Session,
    endpoint: str,
    domain: str,
    username: str,
    password: str,
    project_name: str,
    timeout: int = DEFAULT_TIMEOUT,
) -> Optional[str]:
    """
    Authenticate with project scope.
    Returns the X-Subject-Token value, or None on any failure.
    """
    auth_url = endpoint.rstrip("/") + TOKENS_PATH
    payload = build_auth_payload(domain, username, password, project_name)
    ctx = context(domain, project_name, endpoint=endpoint)
    log.debug("Getting project token", extra=ctx)

    try:
        r = session.post(auth_url, json=payload, timeout=timeout)
    except requests.RequestException as e:
        msg = f"Error getting token for project {project_name}: {e}"
    else:
        if not _is_success(r):
            ctx["status_code"] = r.status_code
            msg = f"Failed to get token for project {project_name}. Status: {r.status_code}"
        else:
            token = r.headers.get("X-Subject-Token")
            if token:
                return token
            msg = f"Token response for project {project_name} has no X-Subject-Token header"

    log.error(msg, extra=ctx)
    log_error("keystone", f"{prefix(domain)} {msg}")
    return None


# --------------------------------------------------------------------
# Resource Listing Helpers
# --------------------------------------------------------------------


def get_projects(session: requests.Session, endpoint: str, token: str,
                 timeout: int = DEFAULT_TIMEOUT) -> FetchResult:
    """Projects the token's user can scope to (Keystone /auth/projects)."""
    result = fetch_listing(session, endpoint, PROJECTS_PATH, "projects", token, "keystone", timeout)
    if result.ok:
        log.info("Found %d projects in %s", len(result.items), endpoint,
                 extra=context(endpoint=endpoint, kind="projects"))
    return result


def get_flavors(session: requests.Session, endpoint: str, token: str,
                timeout: int = DEFAULT_TIMEOUT, page_limit: int = 0) -> FetchResult:
    """Nova flavors (detailed)."""
    return fetch_listing(session, endpoint, FLAVORS_PATH, "flavors", token, "nova", timeout, page_limit)


def get_servers(session: requests.Session, endpoint: str, token: str,
                timeout: int = DEFAULT_TIMEOUT, page_limit: int = 0) -> FetchResult:
    """Nova servers of the token's project (detailed)."""
    return fetch_listing(session, endpoint, SERVERS_PATH, "servers", token, "nova", timeout, page_limit)


def get_volumes(session: requests.Session, endpoint: str, token: str,
                timeout: int = DEFAULT_TIMEOUT, page_limit: int = 0) -> FetchResult:
    """
    Volumes through Nova's os-volumes proxy.
    Field names are camelCase (displayName, volumeType, attachments[].serverId).
    """
    log.debug("Fetching volumes (timeout: %ss)", timeout, extra=context(endpoint=endpoint, kind="volumes"))
    result = fetch_listing(session, endpoint, VOLUMES_PATH, "volumes", token, "cinder", timeout, page_limit)
    if result.ok:
        log.debug("Fetched %d volumes", len(result.items), extra=context(endpoint=endpoint, kind="volumes"))
    return result

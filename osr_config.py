"""
Configuration for the OpenStack inventory report
Reads and validates every environment variable once, before any network call
"""
import base64
import binascii
import json
import os
from typing import Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError, field_validator

OUTPUT_FORMATS = ("xlsx", "csv")
RESOURCE_KINDS = ("servers", "volumes", "both")
PARALLELISM_MODES = ("sequential", "concurrent")


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class EndpointConfig(BaseModel):
    """One cloud region / tenant group to query."""
    domain: str = Field(..., min_length=1)
    endpoint: str = Field(..., min_length=1)
    initial_project: str = Field(..., min_length=1)
    # When set, skips project discovery for this endpoint
    projects: Optional[List[str]] = None

    @field_validator("endpoint")
    @classmethod
    def validate_endpoint(cls, v):
        v = v.strip()
        if not (v.startswith("http://") or v.startswith("https://")):
            raise ValueError("endpoint must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("projects")
    @classmethod
    def validate_projects(cls, v):
        if v is None:
            return v
        cleaned = [p.strip() for p in v if p and p.strip()]
        if not cleaned:
            raise ValueError("projects must list at least one project name")
        return cleaned


class ReportConfig(BaseModel):
    """Everything a report run needs, validated up front."""
    endpoints: List[EndpointConfig] = Field(..., min_length=1)
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)

    output_format: str = "xlsx"
    resources: str = "both"
    parallelism: str = "concurrent"
    max_workers: int = Field(8, ge=1, le=64)

    output_dir: str = "output"
    request_timeout: int = Field(60, ge=1)
    retries: int = Field(2, ge=0, le=10)
    page_limit: int = Field(0, ge=0)
    verify_tls: bool = True

    log_level: str = "INFO"
    json_logs: bool = False
    log_file: Optional[str] = None
    open_report: bool = False

    @field_validator("output_format")
    @classmethod
    def validate_output_format(cls, v):
        v = v.strip().lower()
        if v not in OUTPUT_FORMATS:
            raise ValueError(f"output format must be one of {', '.join(OUTPUT_FORMATS)}")
        return v

    @field_validator("resources")
    @classmethod
    def validate_resources(cls, v):
        v = v.strip().lower()
        if v not in RESOURCE_KINDS:
            raise ValueError(f"resources must be one of {', '.join(RESOURCE_KINDS)}")
        return v

    @field_validator("parallelism")
    @classmethod
    def validate_parallelism(cls, v):
        v = v.strip().lower()
        if v not in PARALLELISM_MODES:
            raise ValueError(f"parallelism must be one of {', '.join(PARALLELISM_MODES)}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        v = v.strip().upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError("log level must be DEBUG, INFO, WARNING, ERROR or CRITICAL")
        return v

    @property
    def want_servers(self) -> bool:
        return self.resources in ("servers", "both")

    @property
    def want_volumes(self) -> bool:
        return self.resources in ("volumes", "both")


# ---------------------------------------------------------------------------
# Environment parsing
# ---------------------------------------------------------------------------

def _env_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes")


def decode_endpoints(encoded: str) -> List[dict]:
    """
    Decode OS_ENDPOINTS_TENANTS: base64 of a JSON array of
    {domain, endpoint, initial_project[, projects]} objects.
    The legacy `tenants` key is accepted as an alias for `projects`.
    """
    try:
        raw = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise ValueError(f"OS_ENDPOINTS_TENANTS is not valid base64: {e}")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"OS_ENDPOINTS_TENANTS does not decode to JSON: {e}")
    if not isinstance(data, list):
        raise ValueError("OS_ENDPOINTS_TENANTS must decode to a JSON array")

    out = []
    for item in data:
        if not isinstance(item, dict):
            raise ValueError("OS_ENDPOINTS_TENANTS entries must be JSON objects")
        entry = dict(item)
        if "projects" not in entry and "tenants" in entry:
            entry["projects"] = entry.pop("tenants")
        out.append(entry)
    return out


def legacy_endpoints(environ: Mapping[str, str]) -> List[dict]:
    """
    Build endpoint entries from the legacy variables:
      OS_ENDPOINTS=https://a,https://b
      OS_DOMAIN=Default
      OS_PROJECT_MAP={"https://a": ["p1", "p2"]}
      OS_INITIAL_PROJECT=admin
    """
    urls = [u.strip() for u in environ.get("OS_ENDPOINTS", "").split(",") if u.strip()]
    domain = environ.get("OS_DOMAIN", "").strip() or "Default"

    project_map: Dict[str, List[str]] = {}
    raw_map = environ.get("OS_PROJECT_MAP", "").strip()
    if raw_map:
        try:
            project_map = json.loads(raw_map)
        except json.JSONDecodeError as e:
            raise ValueError(f"OS_PROJECT_MAP is not valid JSON: {e}")
        if not isinstance(project_map, dict):
            raise ValueError("OS_PROJECT_MAP must be a JSON object of endpoint -> [projects]")
        project_map = {k.rstrip("/"): v for k, v in project_map.items()}

    out = []
    for url in urls:
        projects = project_map.get(url.rstrip("/"))
        if projects is not None and not isinstance(projects, list):
            raise ValueError(f"OS_PROJECT_MAP entry for {url} must be a list")
        initial = environ.get("OS_INITIAL_PROJECT", "").strip()
        if not initial:
            initial = projects[0] if projects else "admin"
        entry = {"domain": domain, "endpoint": url, "initial_project": initial}
        if projects is not None:
            entry["projects"] = projects
        out.append(entry)
    return out


class ConfigValidator:
    """Validates environment configuration on startup"""

    REQUIRED_VARS = {
        "OS_USERNAME": "OpenStack API username",
        "OS_PASSWORD": "OpenStack API password",
    }

    # Optional with defaults
    OPTIONAL_VARS = {
        "OSR_OUTPUT_FORMAT": ("xlsx", "Report format (xlsx or csv)"),
        "OSR_RESOURCES": ("both", "Resource kinds (servers, volumes or both)"),
        "OSR_PARALLELISM": ("concurrent", "Project processing (sequential or concurrent)"),
        "OSR_MAX_WORKERS": ("8", "Concurrent project workers"),
        "OSR_OUTPUT_DIR": ("output", "Report output directory"),
        "OSR_REQUEST_TIMEOUT": ("60", "HTTP request timeout (seconds)"),
        "OSR_RETRIES": ("2", "HTTP retry count"),
        "OSR_PAGE_LIMIT": ("0", "Listing page size (0 = single request)"),
        "OSR_VERIFY_TLS": ("true", "Verify TLS certificates"),
        "OSR_LOG_LEVEL": ("INFO", "Log level"),
    }

    INT_VARS = {
        "OSR_MAX_WORKERS": "max_workers",
        "OSR_REQUEST_TIMEOUT": "request_timeout",
        "OSR_RETRIES": "retries",
        "OSR_PAGE_LIMIT": "page_limit",
    }

    STR_VARS = {
        "OSR_OUTPUT_FORMAT": "output_format",
        "OSR_RESOURCES": "resources",
        "OSR_PARALLELISM": "parallelism",
        "OSR_OUTPUT_DIR": "output_dir",
        "OSR_LOG_LEVEL": "log_level",
    }

    @classmethod
    def build(cls, environ: Mapping[str, str] = None) -> Tuple[Optional[ReportConfig], List[str], List[str]]:
        """
        Parse the environment into a ReportConfig
        Returns: (config or None, errors, warnings)
        """
        environ = os.environ if environ is None else environ
        errors: List[str] = []
        warnings: List[str] = []

        for var, description in cls.REQUIRED_VARS.items():
            value = environ.get(var)
            if not value or value.strip() == "":
                errors.append(f"Missing required env var: {var} ({description})")

        for var, (default, description) in cls.OPTIONAL_VARS.items():
            value = environ.get(var)
            if not value or value.strip() == "":
                warnings.append(f"Using default for {var}={default} ({description})")

        endpoints: List[dict] = []
        try:
            if environ.get("OS_ENDPOINTS_TENANTS", "").strip():
                endpoints = decode_endpoints(environ["OS_ENDPOINTS_TENANTS"])
                if environ.get("OS_ENDPOINTS", "").strip():
                    warnings.append("OS_ENDPOINTS ignored because OS_ENDPOINTS_TENANTS is set")
            elif environ.get("OS_ENDPOINTS", "").strip():
                endpoints = legacy_endpoints(environ)
            else:
                errors.append("Missing required env var: OS_ENDPOINTS_TENANTS (base64 JSON endpoint list)")
        except ValueError as e:
            errors.append(str(e))

        values = {
            "endpoints": endpoints,
            "username": environ.get("OS_USERNAME", ""),
            "password": environ.get("OS_PASSWORD", ""),
            "verify_tls": _env_bool(environ.get("OSR_VERIFY_TLS"), True),
            "json_logs": _env_bool(environ.get("OSR_JSON_LOGS"), False),
            "open_report": _env_bool(environ.get("OSR_OPEN_REPORT"), False),
            "log_file": environ.get("OSR_LOG_FILE", "").strip() or None,
        }
        for var, field in cls.STR_VARS.items():
            value = environ.get(var, "").strip()
            if value:
                values[field] = value
        for var, field in cls.INT_VARS.items():
            value = environ.get(var, "").strip()
            if not value:
                continue
            try:
                values[field] = int(value)
            except ValueError:
                errors.append(f"{var} must be a number: {value}")

        if errors:
            return None, errors, warnings

        try:
            config = ReportConfig(**values)
        except ValidationError as e:
            for err in e.errors():
                loc = ".".join(str(p) for p in err.get("loc", ()))
                errors.append(f"{loc}: {err.get('msg')}")
            return None, errors, warnings

        return config, errors, warnings

    @classmethod
    def print_validation_results(cls, is_valid: bool, errors: List[str], warnings: List[str]):
        """Print validation results"""
        print("\n" + "=" * 70)
        print("Configuration Validation Results")
        print("=" * 70)

        if warnings:
            print("\nWARNINGS:")
            for warning in warnings:
                print(f"  - {warning}")

        if errors:
            print("\nERRORS:")
            for error in errors:
                print(f"  - {error}")
            print("\n" + "=" * 70)
            print("Configuration validation FAILED")
            print("=" * 70 + "\n")
        else:
            print("\nConfiguration validation PASSED")
            print("=" * 70 + "\n")

        return is_valid

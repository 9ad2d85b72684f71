"""
Flattening / normalisation of raw Nova and Cinder records.

flatten_server() / flatten_volume() turn one nested API object into a
single-level {column: scalar} row.  reconcile() is the second pass: it
gives every row of one kind the same, sorted column set so the rows can
be written as a rectangular table.
"""

import json
import logging
from typing import Any, Dict, Iterable, List, Optional

log = logging.getLogger("osr.flatten")

SERVER = "server"
VOLUME = "volume"

EXCLUDED_COLUMNS = {
    SERVER: frozenset([
        "OS-EXT-STS:task_state",
        "addresses",
        "links",
        "flavor_id",
        "progress",
        "accessIPv4",
        "accessIPv6",
        "config_drive",
        "hostId",
        "OS-SRV-USG:terminated_at",
        "key_name",
        "tenant_id",
        "os-extended-volumes:volumes_attached",
        "metadata",
    ]),
    VOLUME: frozenset([
        "links",
        "volume_image_metadata",
    ]),
}

# Scalars kept as numbers instead of strings
NUMERIC_SCALARS = {
    SERVER: frozenset(["OS-EXT-STS:power_state"]),
    VOLUME: frozenset(["size"]),
}

POWER_STATE = "OS-EXT-STS:power_state"
FLAVOR_COLUMNS = ("flavor_name", "flavor_ram", "flavor_vcpus", "flavor_disk")
NUMERIC_FRAGMENTS = ("flavor_ram", "flavor_vcpus", "flavor_disk", "_size", "_count")

# Objects with more entries than this are kept as one JSON column
MAX_EXPANDED_ENTRIES = 10

Row = Dict[str, Any]


# ------------------------------------------------------------------
# Value helpers
# ------------------------------------------------------------------

def to_json(value) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def to_text(value) -> str:
    """String form used for every non-numeric cell."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return to_json(value)
    return str(value)


def to_number(value):
    """int when integral, float otherwise; 0 for None/blank, raw text if unparsable."""
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError:
        return text
    return int(number) if number.is_integer() else number


def is_numeric_column(name: str) -> bool:
    """Default-fill heuristic: 0 for these columns, '' for the rest."""
    if name == "size" or name == POWER_STATE:
        return True
    return any(fragment in name for fragment in NUMERIC_FRAGMENTS)


def default_for(name: str):
    return 0 if is_numeric_column(name) else ""


# ------------------------------------------------------------------
# Field handlers
# ------------------------------------------------------------------

def _join_security_groups(groups: list) -> str:
    names = []
    for sg in groups:
        if isinstance(sg, dict):
            names.append(to_text(sg.get("name")))
        else:
            names.append(to_text(sg))
    return ";".join(names)


def _expand_attachments(key: str, attachments: list, out: Row) -> None:
    for index, attachment in enumerate(attachments):
        if isinstance(attachment, dict):
            for sub_key, sub_value in attachment.items():
                out[f"{key}_{index}_{sub_key}"] = to_text(sub_value)
        else:
            out[f"{key}_{index}"] = to_text(attachment)


def _flavor_columns(flavor_ref: dict, flavors_by_id: Dict[str, dict]) -> Row:
    flavor = flavors_by_id.get(str(flavor_ref.get("id")))
    if not flavor:
        return {"flavor_name": "", "flavor_ram": 0, "flavor_vcpus": 0, "flavor_disk": 0}
    return {
        "flavor_name": to_text(flavor.get("name")),
        "flavor_ram": to_number(flavor.get("ram")),
        "flavor_vcpus": to_number(flavor.get("vcpus")),
        "flavor_disk": to_number(flavor.get("disk")),
    }


def _expand_object(key: str, value: dict, out: Row) -> None:
    if not 0 < len(value) <= MAX_EXPANDED_ENTRIES:
        out[key] = to_json(value)
        return
    try:
        expanded = {f"{key}_{sub_key}": to_text(sub_value) for sub_key, sub_value in value.items()}
    except (TypeError, ValueError):
        out[key] = to_json(value)
        return
    out.update(expanded)


def index_flavors(flavors: Optional[Iterable[dict]]) -> Dict[str, dict]:
    """id -> flavor; first occurrence wins."""
    by_id: Dict[str, dict] = {}
    for f in flavors or []:
        fid = f.get("id") if isinstance(f, dict) else None
        if fid is not None and str(fid) not in by_id:
            by_id[str(fid)] = f
    return by_id


# ------------------------------------------------------------------
# Flattening
# ------------------------------------------------------------------

def flatten_record(
    raw: Dict[str, Any],
    kind: str,
    domain: str,
    project_name: str,
    flavors_by_id: Optional[Dict[str, dict]] = None,
) -> Row:
    """
    Flatten one raw API record of `kind` (SERVER or VOLUME).
    `raw` is not modified.
    """
    if kind not in EXCLUDED_COLUMNS:
        raise ValueError(f"unknown record kind: {kind}")
    excluded = EXCLUDED_COLUMNS[kind]
    numeric = NUMERIC_SCALARS[kind]
    flavors_by_id = flavors_by_id or {}

    out: Row = {"domain": domain, "project_name": project_name}

    for key, value in raw.items():
        if key in excluded:
            continue

        if value is None:
            out[key] = ""
        elif isinstance(value, (list, tuple)):
            if key == "security_groups":
                out[key] = _join_security_groups(value)
            elif key == "attachments":
                _expand_attachments(key, value, out)
            else:
                out[key] = ";".join(to_text(item) for item in value)
        elif isinstance(value, dict):
            if key == "flavor" and kind == SERVER:
                out.update(_flavor_columns(value, flavors_by_id))
            elif key == "metadata":
                for meta_key, meta_value in value.items():
                    out[f"metadata_{meta_key}"] = to_text(meta_value)
            else:
                _expand_object(key, value, out)
        elif key in numeric:
            out[key] = to_number(value)
        else:
            out[key] = to_text(value)

    return out


def flatten_server(raw: Dict[str, Any], flavors: Iterable[dict], domain: str, project_name: str) -> Row:
    return flatten_record(raw, SERVER, domain, project_name, index_flavors(flavors))


def flatten_volume(raw: Dict[str, Any], domain: str, project_name: str) -> Row:
    return flatten_record(raw, VOLUME, domain, project_name)


# ------------------------------------------------------------------
# Global reconciliation
# ------------------------------------------------------------------

def collect_columns(records: Iterable[Row]) -> List[str]:
    """Sorted union of every column seen in `records`."""
    columns = set()
    for r in records:
        columns.update(r.keys())
    return sorted(columns)


def reconcile(records: List[Row], kind: str = "record") -> List[Row]:
    """
    Give every record the same sorted column set, filling gaps with
    default_for(column). Returns new dicts; inputs are left untouched.
    """
    if not records:
        return []

    columns = collect_columns(records)
    log.info("Normalizing %d %ss across %d unique columns", len(records), kind, len(columns))

    normalized = []
    for r in records:
        normalized.append({c: r[c] if c in r else default_for(c) for c in columns})

    expected = len(columns)
    consistent = True
    for index, r in enumerate(normalized):
        if len(r) != expected:
            log.critical("Global inconsistency: %s %d has %d columns, expected %d",
                         kind, index, len(r), expected)
            consistent = False

    if consistent:
        log.info("All %d %ss have exactly %d columns", len(normalized), kind, expected)
    return normalized

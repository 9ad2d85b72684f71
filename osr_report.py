"""
Report output: XLSX workbook with named tables and formula-driven
summary sheets, or plain CSV files.
"""
from __future__ import annotations

import csv
import logging
import os
import secrets
import subprocess
import sys
from typing import Any, Dict, List, Optional

from openpyxl import Workbook
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.styles import Alignment, Font
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.filters import AutoFilter
from openpyxl.worksheet.table import Table, TableStyleInfo

from osr_common import ts_utc

log = logging.getLogger("osr.report")

TABLE_STYLE = "TableStyleLight15"

SERVERS_TABLE = "servers_table"
VOLUMES_TABLE = "volumes_table"

# Rows between the first row of one summary table and the next: header,
# one row per project, then spacing.
SUMMARY_GAP = 4

EMPTY_LABEL = "(empty)"


# ------------------------------------------------------------------
# Cell helpers
# ------------------------------------------------------------------

def autosize(ws):
    """
    Auto-size Excel columns based on cell contents.
    """
    for column_cells in ws.columns:
        length = 0
        col = column_cells[0].column  # 1-based index
        for cell in column_cells:
            value = cell.value
            if value is None:
                continue
            length = max(length, len(str(value)))
        if length > 0:
            ws.column_dimensions[get_column_letter(col)].width = min(max(length + 2, 10), 80)


def excel_safe(value):
    """
    Convert Python value to something safe for Excel.
    - booleans and numbers stay as they are
    - strings lose XML-illegal control characters
    - anything else becomes its string form
    """
    if value is None:
        return None
    if isinstance(value, (bool, int, float)):
        return value
    return ILLEGAL_CHARACTERS_RE.sub("", str(value))


def set_literal(ws, row: int, column: int, value):
    """Write a data value; text beginning with '=' is kept as text, not a formula."""
    cell = ws.cell(row=row, column=column, value=excel_safe(value))
    if isinstance(cell.value, str) and cell.value.startswith("="):
        cell.data_type = "s"
    return cell


def formula_string(value: str) -> str:
    """Quote a literal for use inside a formula."""
    return '"' + str(value).replace('"', '""') + '"'


def criterion(value: str) -> str:
    """
    COUNTIFS/SUMIF criterion matching `value` exactly: wildcards are
    escaped and a leading comparison operator is neutralised.
    """
    text = str(value)
    for ch in ("~", "*", "?"):
        text = text.replace(ch, "~" + ch)
    if text[:1] in ("<", ">", "="):
        text = "=" + text
    return formula_string(text)


def unique_headers(headers: List[str]) -> List[str]:
    """Table column names must be unique, non-empty strings."""
    seen: Dict[str, int] = {}
    out = []
    for h in headers:
        name = excel_safe(h) or EMPTY_LABEL
        key = name.lower()
        if key in seen:
            seen[key] += 1
            name = f"{name}_{seen[key]}"
        else:
            seen[key] = 1
        out.append(name)
    return out


def distinct(values) -> List[Any]:
    """Distinct values in first-seen order."""
    out = []
    seen = set()
    for v in values:
        if v not in seen:
            seen.add(v)
            out.append(v)
    return out


# ------------------------------------------------------------------
# Tables
# ------------------------------------------------------------------

def create_table(ws, name: str, start_row: int, columns: List[str], rows: List[List[Any]],
                 formulas: bool = False) -> Table:
    """
    Write a header + rows block at column A / `start_row` and register it
    as a named, filterable Excel table.

    When `formulas` is true, values starting with '=' are stored as
    formulas (summary tables); otherwise every value is literal data.
    """
    headers = unique_headers(columns)
    for ci, header in enumerate(headers, 1):
        cell = set_literal(ws, start_row, ci, header)
        cell.font = Font(bold=True)
        cell.alignment = Alignment(horizontal="center")

    for ri, values in enumerate(rows, start_row + 1):
        for ci, value in enumerate(values, 1):
            # First column of a summary row is the project name, never a formula
            if formulas and ci > 1:
                ws.cell(row=ri, column=ci, value=excel_safe(value))
            else:
                set_literal(ws, ri, ci, value)

    last_row = start_row + max(len(rows), 1)
    ref = f"A{start_row}:{get_column_letter(len(headers))}{last_row}"

    table = Table(displayName=name, ref=ref)
    table.tableStyleInfo = TableStyleInfo(
        name=TABLE_STYLE,
        showFirstColumn=True,
        showLastColumn=True,
        showRowStripes=True,
        showColumnStripes=False,
    )
    table.autoFilter = AutoFilter(ref=ref)
    ws.add_table(table)
    log.debug("Created table '%s' at %s with %d rows", name, ref, len(rows))
    return table


def write_table(ws, rows: List[Dict[str, Any]]):
    """Write list[dict] to worksheet as a plain (non-table) block."""
    if not rows:
        ws.append(["(no data)"])
        return

    headers = list(rows[0].keys())
    ws.append(headers)

    for c in range(1, len(headers) + 1):
        ws.cell(1, c).font = Font(bold=True)

    for ri, r in enumerate(rows, 2):
        for ci, h in enumerate(headers, 1):
            set_literal(ws, ri, ci, r.get(h))

    ws.freeze_panes = "A2"
    autosize(ws)


def write_records_sheet(wb, title: str, table_name: str, records: List[Dict[str, Any]]):
    ws = wb.create_sheet(title)
    headers = list(records[0].keys())
    log.info("[excel] Creating %s worksheet with %d columns for %d rows", title, len(headers), len(records))
    rows = []
    for index, r in enumerate(records):
        if len(r) != len(headers):
            log.warning("[excel] [%s] Column mismatch on row %d: %d values vs %d columns",
                        title, index, len(r), len(headers))
        rows.append([r.get(h, "") for h in headers])
    create_table(ws, table_name, 1, headers, rows)
    ws.freeze_panes = "A2"
    autosize(ws)
    return ws


def _count_rows(projects, values, table: str, column: str) -> List[List[Any]]:
    rows = []
    for project in projects:
        row: List[Any] = [project]
        for value in values:
            row.append(
                f"=COUNTIFS({table}[project_name],{criterion(project)},"
                f"{table}[{column}],{criterion(value)})"
            )
        rows.append(row)
    return rows


def _sum_rows(projects, columns, table: str) -> List[List[Any]]:
    rows = []
    for project in projects:
        row: List[Any] = [project]
        for column in columns:
            row.append(f"=SUMIF({table}[project_name],{criterion(project)},{table}[{column}])")
        rows.append(row)
    return rows


def _labels(values) -> List[str]:
    return [str(v) if v != "" else EMPTY_LABEL for v in values]


def write_servers_summary(wb, servers: List[Dict[str, Any]]):
    ws = wb.create_sheet("Servers Summary")
    projects = distinct(s.get("project_name", "") for s in servers)
    statuses = distinct(s.get("status", "") for s in servers)
    log.info("[excel] [servers_summary] Found %d projects and %d statuses: %s",
             len(projects), len(statuses), ", ".join(str(s) for s in statuses))

    create_table(
        ws, "servers_status_summary", 1,
        ["Project Name"] + _labels(statuses),
        _count_rows(projects, statuses, SERVERS_TABLE, "status"),
        formulas=True,
    )

    if all(c in servers[0] for c in ("flavor_vcpus", "flavor_ram")):
        create_table(
            ws, "servers_compute_summary", 1 + len(projects) + SUMMARY_GAP,
            ["Project Name", "Total vCPUs", "Total RAM (MB)"],
            _sum_rows(projects, ["flavor_vcpus", "flavor_ram"], SERVERS_TABLE),
            formulas=True,
        )
    else:
        log.warning("[excel] [servers_summary] No flavor columns, skipping compute summary")
    autosize(ws)
    return ws


def write_volumes_summary(wb, volumes: List[Dict[str, Any]]):
    ws = wb.create_sheet("Volumes Summary")
    projects = distinct(v.get("project_name", "") for v in volumes)
    volume_types = [t for t in distinct(v.get("volumeType", "") for v in volumes) if t not in ("", None)]
    statuses = [s for s in distinct(v.get("status", "") for v in volumes) if s not in ("", None)]
    log.info("[excel] [volumes_summary] Found %d projects, %d volume types, %d statuses",
             len(projects), len(volume_types), len(statuses))

    row = 1
    create_table(
        ws, "volumes_type_summary", row,
        ["Project Name"] + _labels(volume_types),
        _count_rows(projects, volume_types, VOLUMES_TABLE, "volumeType"),
        formulas=True,
    )
    row += len(projects) + SUMMARY_GAP
    create_table(
        ws, "volumes_status_summary", row,
        ["Project Name"] + _labels(statuses),
        _count_rows(projects, statuses, VOLUMES_TABLE, "status"),
        formulas=True,
    )
    if volumes and "size" in volumes[0]:
        row += len(projects) + SUMMARY_GAP
        create_table(
            ws, "volumes_size_summary", row,
            ["Project Name", "Total Size (GB)"],
            _sum_rows(projects, ["size"], VOLUMES_TABLE),
            formulas=True,
        )
    autosize(ws)
    return ws


# ------------------------------------------------------------------
# Output files
# ------------------------------------------------------------------

def unique_path(path: str) -> str:
    """`path` if free, otherwise `path` with a random suffix before the extension."""
    if not os.path.exists(path):
        return path
    base, ext = os.path.splitext(path)
    while True:
        candidate = f"{base}-{secrets.token_hex(4)}{ext}"
        if not os.path.exists(candidate):
            log.warning("%s already exists, writing %s instead", path, candidate)
            return candidate


def export_csv(path: str, rows: List[Dict[str, Any]]) -> str:
    """
    Write list[dict] to CSV. Header is the first row's keys in order,
    followed by any keys only later rows carry.
    """
    header = list(rows[0].keys()) if rows else []
    known = set(header)
    for r in rows[1:]:
        for k in r.keys():
            if k not in known:
                known.add(k)
                header.append(k)

    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=header, restval="")
        writer.writeheader()
        for r in rows:
            writer.writerow(r)
    return path


def write_xlsx(
    path: str,
    servers: List[Dict[str, Any]],
    volumes: List[Dict[str, Any]],
    summary: Optional[Dict[str, Any]] = None,
    errors: Optional[List[Dict[str, Any]]] = None,
) -> str:
    wb = Workbook()
    wb.remove(wb.active)

    if summary:
        write_table(wb.create_sheet("Summary"), [summary])

    if servers:
        write_records_sheet(wb, "Servers", SERVERS_TABLE, servers)
        write_servers_summary(wb, servers)

    if volumes:
        write_records_sheet(wb, "Volumes", VOLUMES_TABLE, volumes)
        write_volumes_summary(wb, volumes)

    if errors:
        write_table(wb.create_sheet("Errors"), errors)

    if not wb.worksheets:
        write_table(wb.create_sheet("Summary"), [])

    wb.save(path)
    return path


def write_report(
    servers: List[Dict[str, Any]],
    volumes: List[Dict[str, Any]],
    output_format: str = "xlsx",
    output_dir: str = "output",
    summary: Optional[Dict[str, Any]] = None,
    errors: Optional[List[Dict[str, Any]]] = None,
) -> List[str]:
    """Write the report and return the file paths written."""
    os.makedirs(output_dir, exist_ok=True)
    ts = ts_utc()

    if output_format == "csv":
        paths = []
        for kind, rows in (("servers", servers), ("volumes", volumes)):
            if not rows:
                continue
            path = unique_path(os.path.join(output_dir, f"{ts}-openstack-{kind}.csv"))
            export_csv(path, rows)
            log.info("CSV generated successfully at: %s", path)
            paths.append(path)
        return paths

    if output_format != "xlsx":
        raise ValueError(f"unsupported output format: {output_format}")

    path = unique_path(os.path.join(output_dir, f"{ts}-openstack-resources.xlsx"))
    log.info("[excel] Writing Excel file to: %s", path)
    write_xlsx(path, servers, volumes, summary=summary, errors=errors)
    log.info("XLSX generated successfully at: %s", path)
    return [path]


def open_report(path: str) -> bool:
    """Open `path` with the desktop's default handler; False on failure."""
    if sys.platform == "win32":
        args = ["cmd", "/c", "start", "", path]
    elif sys.platform == "darwin":
        args = ["open", path]
    else:
        args = ["xdg-open", path]
    try:
        subprocess.run(args, check=True, capture_output=True)
    except (OSError, subprocess.SubprocessError) as e:
        log.error("Failed to open %s: %s", path, e)
        log.info("You can manually open the file at: %s", path)
        return False
    log.info("Opened %s", path)
    return True

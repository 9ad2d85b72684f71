import logging

import pytest

from osr_flatten import collect_columns, default_for, is_numeric_column, reconcile


def test_union_of_columns_sorted():
    rows = [{"b": "1", "a": "2"}, {"c": "3"}]
    assert collect_columns(rows) == ["a", "b", "c"]


def test_every_row_gets_every_column():
    rows = [
        {"domain": "d", "project_name": "p", "name": "a", "metadata_team": "x"},
        {"domain": "d", "project_name": "p", "name": "b", "flavor_ram": 512},
    ]
    out = reconcile(rows, "server")
    assert len(out) == 2
    assert list(out[0]) == list(out[1]) == sorted(out[0])
    assert out[0]["flavor_ram"] == 0
    assert out[1]["metadata_team"] == ""
    assert out[1]["flavor_ram"] == 512


def test_present_values_are_kept_verbatim():
    rows = [{"size": 0, "name": ""}, {"size": 12}]
    out = reconcile(rows, "volume")
    assert out[0] == {"name": "", "size": 0}
    assert out[1] == {"name": "", "size": 12}


def test_volume_attachment_defaults():
    rows = [
        {"id": "v1", "attachments_0_device": "/dev/vdb"},
        {"id": "v2", "attachments_1_device": "/dev/vdc", "snapshot_count": 3},
    ]
    out = reconcile(rows, "volume")
    assert out[0]["attachments_1_device"] == ""
    assert out[0]["snapshot_count"] == 0
    assert out[1]["attachments_0_device"] == ""


def test_inputs_not_mutated():
    rows = [{"a": "1"}, {"b": "2"}]
    reconcile(rows)
    assert rows == [{"a": "1"}, {"b": "2"}]


def test_empty_input():
    assert reconcile([]) == []
    assert collect_columns([]) == []


def test_logs_column_count(caplog):
    with caplog.at_level(logging.INFO, logger="osr.flatten"):
        reconcile([{"a": 1}, {"b": 2}], "server")
    assert "All 2 servers have exactly 2 columns" in caplog.text


@pytest.mark.parametrize("name,numeric", [
    ("flavor_ram", True),
    ("flavor_vcpus", True),
    ("flavor_disk", True),
    ("size", True),
    ("OS-EXT-STS:power_state", True),
    ("volume_size", True),
    ("attachment_count", True),
    ("flavor_name", False),
    ("status", False),
    ("metadata_owner", False),
    ("attachments_0_device", False),
])
def test_numeric_column_heuristic(name, numeric):
    assert is_numeric_column(name) is numeric
    assert default_for(name) == (0 if numeric else "")

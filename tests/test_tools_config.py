import pytest

from countly_mcp.tools_config import (
    ALL_OPERATIONS,
    TOOL_CATEGORIES,
    config_summary,
    is_tool_allowed,
    load_tools_config,
    parse_crud_permissions,
)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (None, "CRUD"),
        ("all", "CRUD"),
        ("*", "CRUD"),
        ("", ""),
        ("NONE", ""),
        ("cr", "CR"),
        ("RxD", "DR"),
    ],
)
def test_parse_crud_permissions(raw: str | None, expected: str) -> None:
    assert parse_crud_permissions(raw) == frozenset(expected)


def test_load_tools_config_applies_default_and_overrides() -> None:
    config = load_tools_config({"COUNTLY_TOOLS_ALL": "R", "COUNTLY_TOOLS_EVENTS": "CR"})
    assert config["core"] == frozenset("R")
    assert config["events"] == frozenset("CR")
    assert set(config) == set(TOOL_CATEGORIES)


def test_load_tools_config_defaults_to_everything() -> None:
    assert all(ops == ALL_OPERATIONS for ops in load_tools_config({}).values())


def test_is_tool_allowed_checks_operation() -> None:
    config = load_tools_config({"COUNTLY_TOOLS_EVENTS": "R", "COUNTLY_TOOLS_ALERTS": "NONE"})
    assert not is_tool_allowed("create_event", config)
    assert not is_tool_allowed("list_alerts", config)
    assert is_tool_allowed("list_apps", config)
    assert is_tool_allowed("some_future_tool", config)


def test_config_summary() -> None:
    summary = config_summary(load_tools_config({"COUNTLY_TOOLS_ALERTS": "NONE", "COUNTLY_TOOLS_APPS": "rc"}))
    assert "core: ALL" in summary
    assert "alerts: DISABLED" in summary
    assert "apps: CR" in summary

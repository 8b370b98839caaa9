"""
Per-category CRUD permissions controlling which tools get registered.

``COUNTLY_TOOLS_ALL`` sets the default for every category and
``COUNTLY_TOOLS_<CATEGORY>`` overrides a single one, e.g.::

    COUNTLY_TOOLS_ALL=R
    COUNTLY_TOOLS_EVENTS=CR
    COUNTLY_TOOLS_ALERTS=NONE
"""

import os
from typing import Mapping

ALL_OPERATIONS = frozenset("CRUD")

TOOL_CATEGORIES: dict[str, dict[str, str]] = {
    "core": {
        "ping": "R",
        "get_version": "R",
        "get_plugins": "R",
        "search": "R",
        "fetch": "R",
    },
    "apps": {
        "list_apps": "R",
        "get_app_by_name": "R",
    },
    "analytics": {
        "get_analytics_data": "R",
    },
    "events": {
        "create_event": "C",
    },
    "notes": {
        "list_notes": "R",
    },
    "alerts": {
        "list_alerts": "R",
    },
    "dashboard_users": {
        "get_all_dashboard_users": "R",
    },
}

ToolsConfig = dict[str, frozenset[str]]


def parse_crud_permissions(value: str | None) -> frozenset[str]:
    """Parse values such as ``CRUD``, ``cr``, ``ALL``, ``*`` or ``NONE``."""
    if value is None:
        return ALL_OPERATIONS
    cleaned = value.strip()
    if cleaned.lower() in ("all", "*"):
        return ALL_OPERATIONS
    if not cleaned or cleaned.lower() == "none":
        return frozenset()
    return frozenset(op for op in cleaned.upper() if op in ALL_OPERATIONS)


def load_tools_config(env: Mapping[str, str] | None = None) -> ToolsConfig:
    env = os.environ if env is None else env
    default = parse_crud_permissions(env.get("COUNTLY_TOOLS_ALL"))
    config: ToolsConfig = {}
    for category in TOOL_CATEGORIES:
        override = env.get(f"COUNTLY_TOOLS_{category.upper()}")
        config[category] = parse_crud_permissions(override) if override is not None else default
    return config


def is_tool_allowed(tool_name: str, config: ToolsConfig) -> bool:
    for category, operations in TOOL_CATEGORIES.items():
        if tool_name in operations:
            return operations[tool_name] in config.get(category, frozenset())
    # Uncategorized tools are always available.
    return True


def config_summary(config: ToolsConfig) -> str:
    lines = ["Tools configuration:"]
    for category, operations in config.items():
        ops = "".join(sorted(operations))
        if not ops:
            status = "DISABLED"
        elif operations == ALL_OPERATIONS:
            status = "ALL"
        else:
            status = ops
        lines.append(f"  {category}: {status}")
    return "\n".join(lines)

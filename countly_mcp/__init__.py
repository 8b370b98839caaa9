"""
Countly MCP server package.

Exposes a Countly analytics server as MCP tools. The pieces every tool relies
on live in ``auth`` (token resolution), ``app_cache`` (app name to id
resolution) and ``errors`` (API fault normalization).
"""

__all__ = []

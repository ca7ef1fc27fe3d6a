"""Tool discovery exports."""

from osm2pmtiles.tools.config import ENV_TOOL_PATHS, load_tool_paths, tool_command

__all__ = ["ENV_TOOL_PATHS", "load_tool_paths", "tool_command"]

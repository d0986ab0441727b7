"""MCP tool registration."""

from mcp.server.fastmcp import FastMCP

from ..config import Config
from .team import register_team_tools


def register_all_tools(mcp: FastMCP, config: Config) -> None:
	"""Register all MCP tools."""
	register_team_tools(mcp, config)

"""FastMCP server exposing the memory tools."""

import logging

from fastmcp import FastMCP

from .config import MemoryConfig
from .memory_manager import MemoryManager
from .memory_tools import register_memory_tools

logger = logging.getLogger(__name__)


def create_server(config: MemoryConfig | None = None, name: str = "shared-memory") -> FastMCP:
    """
    Build an MCP server with the five memory tools registered.

    The manager initializes on the first tool call, inside the server's
    event loop.
    """
    memory = MemoryManager(config)
    mcp = FastMCP(name)
    register_memory_tools(mcp, memory)
    logger.info("[%s] Memory tools registered on %s", memory.domain, name)
    return mcp

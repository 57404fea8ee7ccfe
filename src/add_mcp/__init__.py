"""addTaskManager MCP Server - Model Context Protocol integration.

This package exposes the ADD (Assess-Decide-Do) task store to AI assistants
through MCP tools, with every write going through the realm policy engine in
add_core.

Modules:
- server: stdio MCP server, runtime wiring and error mapping
- formatters: Response formatting utilities
- tools: MCP tool definitions
- handlers: Tool implementation handlers
"""

__version__ = "1.1.0"

from . import formatters
from . import tools
from . import handlers

__all__ = ["formatters", "tools", "handlers", "__version__"]

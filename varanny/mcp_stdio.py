"""
MCP Stdio Entry Point.

This module serves the varanny MCP tools over standard I/O (stdio) for MCP clients
(like Claude Desktop or IDE extensions). It only loads the modem configuration, it
does not open the control port.
"""

import os

from varanny.app import CONFIG_ENV, mcp
from varanny.config import default_config_path, load_config
from varanny.core import engine
from varanny.registry import ModemRegistry

def main():
    """Run the MCP server over stdio.

    IMPORTANT: Do not print anything to stdout here, as it will
    corrupt the JSON-RPC protocol used by the MCP client.
    """
    config = load_config(os.environ.get(CONFIG_ENV) or default_config_path())
    engine.config = config
    engine.registry = ModemRegistry.from_config(config)
    mcp.run()

if __name__ == "__main__":
    main()

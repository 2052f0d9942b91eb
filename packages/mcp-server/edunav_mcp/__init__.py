"""
EduNav MCP Server - Model Context Protocol server for connector sync.

Exposes the connector synchronization pipeline to MCP clients:
- Sync tools (run a connector, dry run, replay a raw ingest file)
- Audit tools (sync run history)
- Mapping tools (available transform operations)

Usage:
    # Via CLI
    edunav-mcp

    # Via Python
    from edunav_mcp import server
    server.main()

    # Via an MCP client config (.mcp.json)
    {
        "mcpServers": {
            "edunav": {
                "command": "edunav-mcp",
                "env": {"GCP_PROJECT_ID": "my-project"}
            }
        }
    }
"""

__version__ = "0.1.0"

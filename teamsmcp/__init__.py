"""Teams session keeper: fresh Microsoft Teams credentials for MCP clients."""

__version__ = "0.4.0"

from core.mcp.server import (
    mcp,
    mcp_stream_app,
    MCPRouteNormalizerASGI,
)

__all__ = [
    "mcp",
    "mcp_stream_app",
    "MCPRouteNormalizerASGI",
]

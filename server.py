"""
ContextGate - per-user context assembly for conversational assistants.
HTTP API and MCP server entry point.
"""

import os

import uvicorn

import core.config as config


if __name__ == "__main__":
    config.logger.info("ContextGate starting...")
    uvicorn.run(
        "app.main:asgi_app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8080")),
    )

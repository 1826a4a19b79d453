"""
MCP Server for Catchr.

Exposes capture and pipeline status as tools for MCP clients.
"""

import json

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import Tool, TextContent

from catchr.config import ensure_dirs, load_config
from catchr.pipeline import build_pipeline

# Create MCP server
server = Server("catchr")


@server.list_tools()
async def list_tools() -> list[Tool]:
    """List available tools."""
    return [
        Tool(
            name="catchr_capture",
            description="Capture a thought. It is classified, tagged and, if it mentions a time, turned into a calendar event in the background.",
            inputSchema={
                "type": "object",
                "properties": {
                    "thought": {
                        "type": "string",
                        "description": "The thought to capture",
                    },
                    "audio_reference": {
                        "type": "string",
                        "description": "Path or URL of a voice note to transcribe (optional)",
                    },
                },
            },
        ),
        Tool(
            name="catchr_status",
            description="Get processing status counts (pending, processing, completed, failed) per stage.",
            inputSchema={
                "type": "object",
                "properties": {
                    "owner_id": {
                        "type": "string",
                        "description": "Owner to report on (default: configured user)",
                    },
                },
            },
        ),
        Tool(
            name="catchr_thought",
            description="Get one thought with its category, tags, calendar event and per-stage status.",
            inputSchema={
                "type": "object",
                "properties": {
                    "thought_id": {
                        "type": "string",
                        "description": "The ID of the thought",
                    },
                },
                "required": ["thought_id"],
            },
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
    """Handle tool calls."""
    try:
        if name == "catchr_capture":
            return await tool_capture(arguments)
        elif name == "catchr_status":
            return await tool_status(arguments)
        elif name == "catchr_thought":
            return await tool_thought(arguments)
        else:
            return [TextContent(type="text", text=f"Unknown tool: {name}")]
    except Exception as e:
        return [TextContent(type="text", text=f"Error: {e}")]


def _owner(config: dict) -> str:
    return str(config.get("user", {}).get("id", "local"))


async def tool_capture(args: dict) -> list[TextContent]:
    """Capture a thought."""
    thought = args.get("thought", "").strip()
    audio_reference = args.get("audio_reference") or None

    if not thought and not audio_reference:
        return [TextContent(type="text", text="Error: Empty thought")]

    ensure_dirs()
    config = load_config()
    captured = build_pipeline(config).capture(
        _owner(config), thought, audio_reference=audio_reference
    )

    return [TextContent(type="text", text=f"Captured: {captured.id}")]


async def tool_status(args: dict) -> list[TextContent]:
    """Status summary for an owner."""
    config = load_config()
    owner_id = args.get("owner_id") or _owner(config)

    summary = build_pipeline(config).summary(owner_id)
    return [TextContent(type="text", text=json.dumps(summary, indent=2))]


async def tool_thought(args: dict) -> list[TextContent]:
    """One thought with its status items."""
    thought_id = args.get("thought_id", "").strip()
    if not thought_id:
        return [TextContent(type="text", text="Error: No thought_id provided")]

    pipeline = build_pipeline(load_config())
    thought = pipeline.db.get_thought(thought_id)
    if thought is None:
        return [TextContent(type="text", text=f"Thought not found: {thought_id}")]

    result = {
        "thought": thought.model_dump(mode="json"),
        "items": [
            item.model_dump(mode="json")
            for item in pipeline.status.items_for_thought(thought_id)
        ],
    }
    return [TextContent(type="text", text=json.dumps(result, indent=2))]


async def main():
    """Run the MCP server."""
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())


if __name__ == "__main__":
    import asyncio
    asyncio.run(main())

"""Example of using Story Memory through MCP.

This demonstrates how a game front end or orchestrator would drive a story
through the MCP server.
"""

import asyncio
import json
import os

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client


async def run_example():
    """Run example MCP interactions."""
    # Connect to the MCP server; model credentials pass through the environment
    server_params = StdioServerParameters(
        command="story-memory-mcp",
        env={
            "STORY_MEMORY_DB_PATH": "example_story.db",
            "STORY_MEMORY_EMBEDDING_BACKEND": "local",
            "OPENROUTER_API_KEY": os.environ.get("OPENROUTER_API_KEY", ""),
        },
    )

    async with stdio_client(server_params) as (read, write):
        async with ClientSession(read, write) as session:
            # Initialize connection
            await session.initialize()

            # List available tools
            tools = await session.list_tools()
            print(f"Available tools: {[t.name for t in tools.tools]}")

            # Create a story
            print("\n=== Creating story ===")
            created = await session.call_tool(
                "create_story",
                {
                    "title": "The Amulet",
                    "genre": "fantasy",
                    "memory_config": {"chapter_threshold": 20, "chapter_buffer": 6},
                },
            )
            story_id = created.content[0].text.split(": ")[1]

            # Lore the narrator should only see when it comes up
            await session.call_tool(
                "add_lorebook_entry",
                {
                    "story_id": story_id,
                    "name": "The Silver Order",
                    "type": "faction",
                    "description": "Knights sworn to the old king",
                    "hidden_info": "They took Elena's brother",
                    "aliases": ["Silverblades"],
                },
            )

            # Play a couple of turns
            print("\n=== Playing ===")
            for action in ["I enter the tavern", "I ask about the Silverblades"]:
                result = await session.call_tool(
                    "submit_action", {"story_id": story_id, "user_input": action}
                )
                print(f"> {action}\n{result.content[0].text}\n")

            # What the classifier extracted
            print("\n=== World state ===")
            world = json.loads(
                (await session.call_tool("get_world_state", {"story_id": story_id})).content[0].text
            )
            for character in world["characters"]:
                print(f"  - {character['name']} ({character['relationship']})")
            for beat in world["story_beats"]:
                print(f"  - [{beat['type']}] {beat['title']}")

            # What the narrator would see for the next input
            print("\n=== Context for next turn ===")
            context = json.loads(
                (
                    await session.call_tool(
                        "build_context",
                        {"story_id": story_id, "user_input": "I follow the knights"},
                    )
                ).content[0].text
            )
            print(context["context_block"])


if __name__ == "__main__":
    asyncio.run(run_example())

"""System instructions for assistants that answer with a trailing structured block."""

from __future__ import annotations

from collections.abc import Sequence

from .models import Agent
from .protocol import BLOCK_DELIMITER

BASE_INSTRUCTIONS = f"""
You are a helpful assistant that runs tasks based on the user prompt.

MAIN GUIDELINES

- Use your best judgment to decide which tasks to run; when several tasks do the same thing, pick one
- Prefer tasks that do not generate files unless the user asks for files
- If a task response includes file paths, list them in the JSON block described below
- For math formulas use KaTeX syntax with $$ as delimiter

JSON BLOCK INSTRUCTIONS

- End every response with a JSON block surrounded by {BLOCK_DELIMITER} like this:
{BLOCK_DELIMITER}
{{
  "files": [
    {{
      "name": "file",
      "path": "/some/path/file",
      "mimeType": "a mime type"
    }}
  ]
}}
{BLOCK_DELIMITER}
- Give every file a meaningful name based on the context; fix the extension if it does not match the mime type
- Do not wrap the JSON block in code fences; write it exactly as in the example above
- Never mention the JSON block in your response
"""

AGENT_TOOLS_HEADER = """
AGENT TOOLS INSTRUCTIONS

- The function tools available to you belong to a set of agents
- Each agent section below lists its tools, instructions and domain information for interpreting the data its functions return
- Prefer existing tools; if none can fulfill the request, use the ad-hoc task tool of the most suitable agent
"""


def agent_instructions(agent: Agent) -> str:
    """Render the instruction section for one agent."""
    tools = "".join(f"\n    - {agent.id}_{task.name}" for task in agent.tasks)
    return (
        f"\nAGENT {agent.name}\n"
        f"\n  ID: {agent.id}\n"
        f"\n  Instructions:\n\n    {agent.instructions}\n"
        f"  Tools:{tools}\n"
    )


def build_instructions(agents: Sequence[Agent] = (), extra: str | None = None) -> str:
    """Build assistant instructions for `agents`, optionally followed by `extra`."""
    instructions = BASE_INSTRUCTIONS
    if agents:
        instructions += AGENT_TOOLS_HEADER
        instructions += "".join(agent_instructions(agent) for agent in agents)
    if extra:
        instructions += "\n" + extra
    return instructions

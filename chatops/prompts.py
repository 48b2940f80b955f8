"""System prompt assembly and history -> chat messages."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from .config import LLMConfig
from .errors import ConfigError
from .history import HistoryEntry

log = logging.getLogger(__name__)

DEFAULT_PREAMBLE = "You are a helpful assistant."

_TOOL_INSTRUCTIONS = """\
You have access to the following tools. Analyze the user's request to determine if a tool is needed.

TOOL USAGE INSTRUCTIONS:
1. If a tool is appropriate AND you have ALL required arguments from the user's request, respond with ONLY the JSON object.
2. The JSON MUST be properly formatted with no additional text before or after.
3. Do NOT include explanations, markdown formatting, or extra text with the JSON.
4. If any required arguments are missing, do NOT generate the JSON. Instead, ask the user for the missing information.
5. If no tool is needed, respond naturally to the user's request.

Available Tools:
"""

_TOOL_FORMAT = """
EXACT JSON FORMAT FOR TOOL CALLS:
{
  "tool": "<tool_name>",
  "args": { <arguments matching the tool's input schema> }
}

EXAMPLE:
If the user asks 'Show me the files in the current directory' and 'fs_list_dir' is an available tool:
{
  "tool": "fs_list_dir",
  "args": { "path": "." }
}

IMPORTANT: Return ONLY the raw JSON object with no explanations or formatting when using a tool.
"""


def load_preamble(config: LLMConfig) -> str:
    """The system preamble: customPrompt, else customPromptFile, else the default."""
    if config.custom_prompt:
        return config.custom_prompt.strip()
    if config.custom_prompt_file:
        path = Path(config.custom_prompt_file)
        try:
            text = path.read_text(encoding="utf-8").strip()
        except OSError as e:
            raise ConfigError(f"Cannot read customPromptFile {path}: {e}") from e
        if text:
            return text
        log.warning(f"customPromptFile {path} is empty, using the default prompt")
    return DEFAULT_PREAMBLE


def render_tool_prompt(tools: list[dict]) -> str:
    """Describe tools in text for models that are not given native tool schemas."""
    if not tools:
        return ""
    parts = [_TOOL_INSTRUCTIONS]
    for tool in tools:
        schema = json.dumps(tool["input_schema"], indent=2)
        parts.append(
            f"\nTool Name: {tool['name']}\n"
            f"  Description: {tool['description']}\n"
            f"  Input Schema (JSON):\n  {schema}\n"
        )
    parts.append(_TOOL_FORMAT)
    return "".join(parts)


def build_system_prompt(config: LLMConfig, preamble: str, tools: list[dict]) -> str:
    if config.use_native_tools or config.replace_tool_prompt:
        return preamble
    tool_prompt = render_tool_prompt(tools)
    return f"{preamble}\n\n{tool_prompt}" if tool_prompt else preamble


def history_to_messages(entries: list[HistoryEntry]) -> list[dict]:
    messages = []
    for entry in entries:
        if entry.role == "tool":
            messages.append({"role": "system", "content": f"Tool result: {entry.text}"})
        else:
            messages.append({"role": entry.role, "content": entry.text})
    return messages

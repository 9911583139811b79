"""Tool grammar for the product search round-trip.

Models are not given native function-calling schemas; instead the system
prompt teaches them a strict JSON shape they return in place of an answer:

    {"tool": "search_products", "query": "red shirt"}

Only ``search_products`` is executed server-side. Any other tool-shaped output
is treated as unhandled by the response parser.
"""

import json
from typing import Any


class ToolName:
    """Constants for tool names to avoid string typos."""

    SEARCH_PRODUCTS = "search_products"


# Mapping of tool names to their required parameters for validation
TOOL_REQUIRED_PARAMS: dict[str, list[str]] = {
    ToolName.SEARCH_PRODUCTS: ["query"],
}


def tool_call_example(query: str) -> str:
    """Render the exact JSON a model must emit to request a product search."""
    return json.dumps({"tool": ToolName.SEARCH_PRODUCTS, "query": query}, ensure_ascii=False)


def validate_tool_arguments(tool_name: str, arguments: dict[str, Any]) -> tuple[bool, str | None]:
    """Validate that required arguments are provided for a tool.

    Args:
        tool_name: Name of the tool being called.
        arguments: Dictionary of arguments provided.

    Returns:
        Tuple of (is_valid, error_message).
        If valid, returns (True, None).
        If invalid, returns (False, error_message).
    """
    if tool_name not in TOOL_REQUIRED_PARAMS:
        return False, f"Unknown tool: {tool_name}"

    required = TOOL_REQUIRED_PARAMS[tool_name]
    missing = [
        param for param in required
        if not isinstance(arguments.get(param), str) or not arguments[param].strip()
    ]

    if missing:
        return False, f"Missing required parameters for {tool_name}: {', '.join(missing)}"

    return True, None

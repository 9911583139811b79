"""Core utilities for inference, parsing, tools, and prompts.

This module provides the provider-facing infrastructure of the AI engine:
- Multi-provider inference client and its error taxonomy
- Classification of raw model output into replies and tool calls
- Tool-call grammar for product search
- System prompts and message assembly
"""

from app.core.llm import (
    Completion,
    InferenceClient,
    LLMError,
    LLMAuthError,
    LLMProviderError,
    LLMConnectionError,
    LLMQuotaError,
    LLMRateLimitError,
    LLMResponseError,
    LLMServerError,
    estimate_token_usage,
)
from app.core.parser import (
    APOLOGY_REPLY,
    ParseError,
    PlainText,
    StructuredReply,
    ToolCall,
    parse_model_output,
)
from app.core.tools import (
    ToolName,
    tool_call_example,
    validate_tool_arguments,
)
from app.core.prompts import (
    ERROR_RESPONSES,
    build_conversation,
    build_tool_followup,
    format_product_context,
    get_error_response,
)

__all__ = [
    # Inference
    "Completion",
    "InferenceClient",
    "LLMError",
    "LLMAuthError",
    "LLMProviderError",
    "LLMConnectionError",
    "LLMQuotaError",
    "LLMRateLimitError",
    "LLMResponseError",
    "LLMServerError",
    "estimate_token_usage",
    # Parser
    "APOLOGY_REPLY",
    "ParseError",
    "PlainText",
    "StructuredReply",
    "ToolCall",
    "parse_model_output",
    # Tools
    "ToolName",
    "tool_call_example",
    "validate_tool_arguments",
    # Prompts
    "ERROR_RESPONSES",
    "build_conversation",
    "build_tool_followup",
    "format_product_context",
    "get_error_response",
]

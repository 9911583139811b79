"""Single round-trip execution of model-issued tool calls.

When the model answers with ``{"tool": "search_products", "query": ...}`` the
catalog is searched, the results are fed back as a system turn and the model
is asked once more. The second answer is final: another tool call is not
honoured.

On the managed swarm the second inference is skipped whenever the search
returns rows; the reply is rendered directly from them.
"""

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from app.core.llm import Completion, estimate_token_usage
from app.core.parser import (
    APOLOGY_REPLY,
    ParsedOutput,
    PlainText,
    StructuredReply,
    ToolCall,
    parse_model_output,
)
from app.core.prompts import (
    DESCRIPTION_LABEL,
    PRICE_LABEL,
    PRICE_MISSING,
    build_tool_followup,
)
from app.schemas.conversation import PageConfig, Product
from app.services.catalog import CatalogAPIError, ProductSearch

logger = logging.getLogger(__name__)

SYNTHESIZED_DESCRIPTION_CHARS = 120

Reinvoke = Callable[[list[dict[str, Any]]], Awaitable[Completion]]


@dataclass
class ToolLoopResult:
    """Final parsed output plus the tokens spent by the follow-up call."""
    output: ParsedOutput
    token_usage: int = 0
    products: int = 0
    reinvoked: bool = False


def synthesize_reply(products: list[Product], default_currency: str = "BDT") -> StructuredReply:
    """Render search rows as a reply without asking the model again."""
    lines = []
    for i, p in enumerate(products, start=1):
        price = f"{p.price} {p.currency or default_currency}" if p.price else PRICE_MISSING
        line = f"Item {i}: {p.name}. {PRICE_LABEL}: {price}."
        if p.description:
            desc = " ".join(p.description.split())[:SYNTHESIZED_DESCRIPTION_CHARS]
            line += f" {DESCRIPTION_LABEL}: {desc}"
        lines.append(line)

    images = [
        {"url": p.image_url, "title": p.name or "Product Image"}
        for p in products
        if p.image_url
    ]
    return StructuredReply({
        "reply": " \n".join(lines),
        "images": images,
        "sentiment": "pos",
        "dm_message": None,
        "bad_words": None,
        "order_details": None,
    })


class ToolCallLoop:
    """Runs a tool call and resolves it into a final answer."""

    def __init__(self, catalog: ProductSearch, default_currency: str = "BDT") -> None:
        self._catalog = catalog
        self._default_currency = default_currency

    async def _search(self, call: ToolCall, config: PageConfig) -> list[Product]:
        if not config.user_id:
            logger.warning(f"Page {config.page_id} has no owner; tool search skipped")
            return []
        try:
            return await self._catalog.search(config.user_id, call.query, config.page_id)
        except CatalogAPIError as e:
            logger.error(f"Tool search failed for page={config.page_id}: {e}")
            return []

    async def run(
        self,
        call: ToolCall,
        messages: list[dict[str, Any]],
        config: PageConfig,
        reinvoke: Reinvoke,
        synthesize: bool = False,
    ) -> ToolLoopResult:
        """Execute ``call`` and produce the final answer.

        Args:
            call: Tool call parsed from the first model response.
            messages: Conversation sent with the first call; not mutated.
            config: Page configuration (owner and page scope the search).
            reinvoke: Sends a message list on the same provider, model and
                credential as the first call.
            synthesize: Render the reply from search rows when there are any.

        Returns:
            ToolLoopResult. A second tool call resolves to the apology reply.

        Raises:
            LLMError: If the follow-up inference fails.
        """
        logger.info(f"[Tool] Searching products for {call.query!r} (page={config.page_id})")
        products = await self._search(call, config)

        if synthesize and products:
            logger.info(f"[Tool] Synthesizing reply from {len(products)} products")
            return ToolLoopResult(synthesize_reply(products, self._default_currency), products=len(products))

        followup = messages + [
            {"role": "assistant", "content": json.dumps(call.raw or {"tool": call.name, "query": call.query}, ensure_ascii=False)},
            build_tool_followup(products),
        ]
        completion = await reinvoke(followup)
        usage = estimate_token_usage(followup, completion.content, completion.token_usage)

        output = parse_model_output(completion.content)
        if isinstance(output, ToolCall):
            logger.warning(f"[Tool] Second tool call ({output.query!r}) not honoured")
            output = PlainText(APOLOGY_REPLY)

        return ToolLoopResult(output, token_usage=usage, products=len(products), reinvoked=True)

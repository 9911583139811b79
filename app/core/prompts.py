"""System prompts and message assembly for the sales bot.

This module builds the ordered message list sent to a provider. Two modes:

- EXTERNAL: white-label API customers. A minimal identity preamble plus the
  page's own prompt; the model answers in free text.
- INTERNAL: Messenger/WhatsApp pages. A full system document with persona,
  injected product listings, and the rules block that defines the tool-call
  grammar, label/order tags and the JSON output schema.

Key characteristics of the internal rules:
- STRICT DOMAIN: answer only about the business in the provided context
- URL SAFETY: only echo image URLs that appear in the context
- Default reply language is Bengali, as most pages serve Bangladeshi shops
"""

import json
import re
from typing import Any

from app.core.tools import ToolName, tool_call_example
from app.schemas.conversation import (
    ChatTurn,
    ConversationRequest,
    ExecutionMode,
    PageConfig,
    Product,
)


WHITE_LABEL_INSTRUCTION = (
    "You are SalesmanChatbot, a helpful AI assistant. You are NOT Google Gemini, "
    "OpenAI, or any other provider. You are a proprietary AI."
)

DEFAULT_TEXT_PROMPT = "You are a helpful assistant."

DEFAULT_VISION_PROMPT = "Describe this image in detail."

# Used for managed-pool and OpenRouter pages, whose free models drift more
STABILITY_DIRECTIVE = """
### SYSTEM OVERRIDE: STABILITY PROTOCOL ###
You are a sophisticated AI Assistant optimized for CUSTOMER SUPPORT.
Your primary directive is to provide STABLE, ACCURATE, and HELPFUL responses.

[MANDATORY RULES]
1. **ANSWER STABILITY**:
   - Analyze the 'Ctx' (Context) carefully.
   - If the user asks something outside the 'Ctx', politely decline.
   - Do NOT hallucinate or invent features.
   - IGNORE minor typos in user input; infer intent.
2. **FORMATTING**:
   - Keep replies SHORT and TO THE POINT.
   - No preambles like "Here is your response". Just the answer.
"""

TERSE_PERSONA = "Persona: Fast, accurate, expert sales assistant. Strict JSON. No fluff."

OUTPUT_SCHEMA = """{
  "reply": "Response text"|null,
  "images": [ { "url": "https://...", "title": "Product Name" } ]|null,
  "sentiment": "pos|neu|neg",
  "dm_message": "msg"|null,
  "bad_words": "words"|null,
  "order_details": { "product_name", "quantity", "address", "phone", "price" }|null
}"""

INTERNAL_SYSTEM_TEMPLATE = """Role: Bot {bot_name} representing {owner_name}.
Ctx: {context}
{product_context}
{persona}
Rules:
1. IMAGE HANDLING: If you see [System Note] "User sent >10 images" or "video", rely on Ad Context or ask user.
2. AD CONTEXT: If '[System Note: User clicked on an AD...]' exists, use it to identify the product.
3. STRICT DOMAIN CONTROL: Answer ONLY about business/products in 'Ctx'. Ignore unrelated topics.
4. ADDRESSING: You are speaking to '{sender_name}'.
5. SENDING IMAGES (MANDATORY): If the context contains 'Image URL: https://' text or any 'image_url' field for the product you are discussing (either in [Available Products in Store] or in Search Results JSON), you MUST include each of those URLs in the 'images' array of your JSON response. Format: {{ "url": "URL", "title": "Product Name" }}. Do NOT skip this.
6. PRODUCT SEARCH TOOL (CRITICAL):
   - You have access to a Real-Time Product Database.
   - If user asks "Do you have X?", "Is X available?", "Price of X?", or sends an image and asks "Do you have this?", you MUST use the tool.
   - Return STRICT JSON: {tool_grammar}
   - Example: User: "Do you have red shirt?" -> JSON: {tool_example}
   - Do NOT say "I will check". Just return the JSON.
7. DYNAMIC ACTIONS:
   - If user requests ADMIN/SUPPORT/CALL or specific action defined in 'Ctx', append "[ADD_LABEL: label_name]" to your reply.
   - Example: "I will connect you to admin. [ADD_LABEL: adminhandle]"
   - Supported Labels:
     - 'adminhandle': User wants to talk to admin explicitly (human request).
     - 'ordertrack': Order is CONFIRMED (Automatic).
8. MULTI-VARIANT PRODUCT RESPONSE:
   - If product search returns multiple similar products (e.g., Mango Red, Mango White), list all variants clearly.
   - Ask the user which variant they prefer.
9. ORDER PROCESS:
   - If user wants to place an order, collect these details: Product Name, Quantity, Full Address, Price (if applicable).
   - Ask for missing details if incomplete.
   - Once ALL details are provided, confirm the order.
   - APPEND this EXACT tag to your reply: [SAVE_ORDER: {{"product_name":"...","product_quantity":"...","location":"...","price":"..."}}]
   - ALSO APPEND: [ADD_LABEL: ordertrack]
   - NOTE: The 'number' will be automatically captured from the sender, so just capture the other details.
10. Output RAW JSON:
{output_schema}
11. URL SAFETY:
   - NEVER invent or guess external website links.
   - If no 'Image URL' or 'image_url' is provided in context for a product, respond without any link for that product.
   - Only use URLs that explicitly appear in 'Image URL' fields inside the context."""

TOOL_FOLLOWUP_TEMPLATE = (
    "[System] Search Results: {results}. Now answer the user in {language}. "
    "IMPORTANT: If a product has an 'image_url', you MUST include it in the "
    "'images' array of your JSON response."
)

# Labels for replies synthesized from search rows without a second model call
PRICE_LABEL = "দাম"
PRICE_MISSING = "দাম দেওয়া নেই"
DESCRIPTION_LABEL = "বিবরণ"


# Caller-facing messages for failures the engine reports instead of answering
ERROR_RESPONSES: dict[str, str] = {
    "user_key_failed": (
        "Your API Provider settings are incorrect or the key has expired. "
        "Please check your dashboard."
    ),
    "missing_user_key": (
        "Own-key mode is enabled but no API key is configured. "
        "Please add a key in your dashboard."
    ),
    "service_unavailable": (
        "Our assistant is busy right now. Please try again in a moment."
    ),
}


_INLINE_IMAGES_RE = re.compile(r"\[User sent images: (.*?)\]")


def get_error_response(error_type: str) -> str:
    """Get the message for a failure type, falling back to the busy message."""
    return ERROR_RESPONSES.get(error_type, ERROR_RESPONSES["service_unavailable"])


def extract_inline_images(message: str) -> tuple[str, list[str]]:
    """Split a ``[User sent images: a, b]`` marker out of the user message.

    Returns:
        Tuple of (message without the marker, extracted image refs).
    """
    match = _INLINE_IMAGES_RE.search(message)
    if not match:
        return message, []
    refs = [ref.strip() for ref in match.group(1).split(",") if ref.strip()]
    return message.replace(match.group(0), "").strip(), refs


def _price_text(price: Any, currency: str | None, default_currency: str) -> str | None:
    if price in (None, "", 0, "0"):
        return None
    return f"{price} {currency or default_currency}"


def format_product_context(products: list[Product], default_currency: str = "BDT") -> str:
    """Render catalog rows as the compact block injected into the system prompt."""
    if not products:
        return ""

    lines = ["", "[Available Products in Store]"]
    for i, p in enumerate(products, start=1):
        variant_info = ""
        if p.variants:
            variant_info = " | Variants: " + ", ".join(
                f"{v.name} ({v.price} {v.currency or default_currency})" for v in p.variants
            )
        price = _price_text(p.price, p.currency, default_currency) or "N/A"
        stock = p.stock if p.stock is not None else "N/A"
        desc = p.description.replace("\n", " ")[:200] if p.description else "N/A"
        image = p.image_url if p.image_url and p.image_url.startswith("http") else "N/A"
        lines.append(
            f"Item {i}: {p.name} | Price: {price} | Stock: {stock} | "
            f"Image URL: {image} | Desc: {desc}{variant_info}"
        )
    lines.append("[End of Products]")
    return "\n".join(lines) + "\n"


def build_media_context(image_texts: list[str], audio_texts: list[str]) -> str:
    """Render media analysis as a system note appended to the user turn."""
    context = ""
    if image_texts:
        context += "\n[System Note: User sent images. Analysis below:]\n" + "\n".join(
            f"Image {i}: {text}" for i, text in enumerate(image_texts, start=1)
        )
    if audio_texts:
        context += "\n[System Note: User sent audio messages:]\n" + "\n".join(audio_texts)
    return context


def build_external_system_prompt(config: PageConfig) -> str:
    """White-label preamble followed by the page's own instructions."""
    return f"{WHITE_LABEL_INSTRUCTION}\n\n{config.text_prompt or ''}".strip()


def build_internal_system_prompt(
    config: PageConfig,
    sender_name: str,
    owner_name: str,
    product_context: str = "",
    stability: bool = True,
) -> str:
    """Full rules document for Messenger/WhatsApp pages."""
    return INTERNAL_SYSTEM_TEMPLATE.format(
        bot_name=config.bot_name or "Assistant",
        owner_name=owner_name,
        context=config.text_prompt or DEFAULT_TEXT_PROMPT,
        product_context=product_context,
        persona=STABILITY_DIRECTIVE if stability else TERSE_PERSONA,
        sender_name=sender_name,
        tool_grammar='{ "tool": "' + ToolName.SEARCH_PRODUCTS + '", "query": "keyword" }',
        tool_example=tool_call_example("red shirt"),
        output_schema=OUTPUT_SCHEMA,
    )


def build_messages(
    system_prompt: str,
    history: list[ChatTurn],
    user_message: str,
) -> list[dict[str, Any]]:
    """Order: system prompt, prior turns, current user turn."""
    messages: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    messages.extend({"role": turn.role, "content": turn.content} for turn in history)
    messages.append({"role": "user", "content": user_message})
    return messages


def build_tool_followup(products: list[Product], language: str = "Bengali") -> dict[str, str]:
    """Synthetic system turn carrying search results back to the model."""
    results = json.dumps(
        [p.model_dump(exclude_none=True) for p in products], ensure_ascii=False
    )
    return {
        "role": "system",
        "content": TOOL_FOLLOWUP_TEMPLATE.format(results=results, language=language),
    }


def build_conversation(
    request: ConversationRequest,
    config: PageConfig,
    user_message: str,
    product_context: str = "",
    stability: bool = True,
) -> tuple[list[dict[str, Any]], bool]:
    """Assemble the message list for a request in its execution mode.

    Args:
        request: Incoming conversation request.
        config: Page configuration in effect for this request.
        user_message: User turn after media notes were appended.
        product_context: Rendered product block (internal mode only).
        stability: Use the stability directive instead of the terse persona.

    Returns:
        Tuple of (messages, structured_output). External mode never requests
        structured output.
    """
    if request.resolved_mode() == ExecutionMode.EXTERNAL:
        system_prompt = build_external_system_prompt(config)
        return build_messages(system_prompt, request.history, user_message), False

    system_prompt = build_internal_system_prompt(
        config,
        sender_name=request.sender_name or request.sender_id,
        owner_name=request.owner_name or "the shop owner",
        product_context=product_context,
        stability=stability,
    )
    return build_messages(system_prompt, request.history, user_message), True

import base64
import json

import httpx
import pytest
import respx
from httpx import Response

from app.core.llm import (
    InferenceClient,
    LLMAuthError,
    LLMConnectionError,
    LLMError,
    LLMProviderError,
    LLMQuotaError,
    LLMRateLimitError,
    LLMResponseError,
    LLMServerError,
    estimate_token_usage,
)
from tests.fakes import make_settings

GOOGLE_CHAT = "https://generativelanguage.googleapis.com/v1beta/openai/chat/completions"
OPENROUTER_CHAT = "https://openrouter.ai/api/v1/chat/completions"


@pytest.mark.asyncio
async def test_complete_payload_and_usage():
    client = InferenceClient(make_settings())
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["headers"] = request.headers
                return Response(200, json={
                    "choices": [{"message": {"content": '{"reply": "hi"}'}}],
                    "usage": {"total_tokens": 33},
                })

            respx_mock.post(GOOGLE_CHAT).mock(side_effect=handler)
            completion = await client.complete(
                [{"role": "user", "content": "hello"}],
                "gemini-2.5-flash",
                provider="google",
                api_key="AIzaSyTEST",
                structured_output=True,
                timeout=5,
            )
            assert completion.content == '{"reply": "hi"}'
            assert completion.token_usage == 33
            assert captured["json"]["model"] == "gemini-2.5-flash"
            assert captured["json"]["response_format"] == {"type": "json_object"}
            assert captured["headers"]["Authorization"] == "Bearer AIzaSyTEST"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_openrouter_requests_carry_attribution_headers():
    settings = make_settings()
    client = InferenceClient(settings)
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["headers"] = request.headers
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return Response(200, json={"choices": [{"message": {"content": "ok"}}]})

            respx_mock.post(OPENROUTER_CHAT).mock(side_effect=handler)
            completion = await client.complete(
                [{"role": "user", "content": "hello"}], "m", provider="openrouter", api_key="sk-or-v1-x"
            )
            assert completion.token_usage == 0
            assert captured["headers"]["HTTP-Referer"] == settings.openrouter_referer
            assert captured["headers"]["X-Title"] == settings.openrouter_title
            assert "response_format" not in captured["json"]
    finally:
        await client.close()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,body,error",
    [
        (429, {"error": {"message": "You exceeded your current quota"}}, LLMQuotaError),
        (429, {"error": {"message": "Too Many Requests"}}, LLMRateLimitError),
        (401, {"error": {"message": "API key not valid"}}, LLMAuthError),
        (403, [{"error": {"message": "Permission denied"}}], LLMAuthError),
        (503, {"error": "overloaded"}, LLMServerError),
        (400, {"error": {"message": "bad model"}}, LLMError),
    ],
)
async def test_status_codes_map_to_error_classes(status, body, error):
    client = InferenceClient(make_settings())
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(GOOGLE_CHAT).mock(return_value=Response(status, json=body))
            with pytest.raises(error) as exc_info:
                await client.complete([{"role": "user", "content": "x"}], "m", provider="google", api_key="k")
            assert exc_info.value.status_code == status
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_connection_failure_maps_to_connection_error():
    client = InferenceClient(make_settings())
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(GOOGLE_CHAT).mock(side_effect=httpx.ConnectError("refused"))
            with pytest.raises(LLMConnectionError):
                await client.complete([{"role": "user", "content": "x"}], "m", provider="google", api_key="k")
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_empty_choices_is_response_error():
    client = InferenceClient(make_settings())
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(GOOGLE_CHAT).mock(return_value=Response(200, json={"choices": []}))
            with pytest.raises(LLMResponseError):
                await client.complete([{"role": "user", "content": "x"}], "m", provider="google", api_key="k")
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_google_media_uses_generate_content():
    client = InferenceClient(make_settings())
    captured = {}
    url = "https://generativelanguage.googleapis.com/v1beta/models/gemini-2.5-flash:generateContent"
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["headers"] = request.headers
                return Response(200, json={
                    "candidates": [{"content": {"parts": [{"text": "A red shirt"}]}}],
                    "usageMetadata": {"totalTokenCount": 321},
                })

            respx_mock.post(url).mock(side_effect=handler)
            completion = await client.complete_with_media(
                "Describe", "gemini-2.5-flash", b"img", "image/png", provider="google", api_key="AIzaSyK"
            )
            assert completion.content == "A red shirt"
            assert completion.token_usage == 321
            assert captured["headers"]["x-goog-api-key"] == "AIzaSyK"
            parts = captured["json"]["contents"][0]["parts"]
            assert parts[0] == {"text": "Describe"}
            assert parts[1]["inline_data"] == {"mime_type": "image/png", "data": base64.b64encode(b"img").decode()}
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_google_media_empty_candidates_is_response_error():
    client = InferenceClient(make_settings())
    url = "https://generativelanguage.googleapis.com/v1beta/models/gemini-2.5-flash-lite:generateContent"
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(url).mock(return_value=Response(200, json={"candidates": []}))
            with pytest.raises(LLMResponseError):
                await client.complete_with_media(
                    "Describe", "gemini-2.5-flash-lite", b"img", "image/png", provider="google", api_key="k"
                )
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_openrouter_media_sends_image_data_uri():
    client = InferenceClient(make_settings())
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return Response(200, json={"choices": [{"message": {"content": "a mango"}}], "usage": {"total_tokens": 9}})

            respx_mock.post(OPENROUTER_CHAT).mock(side_effect=handler)
            completion = await client.complete_with_media(
                "Describe", "qwen/vl:free", b"img", "image/jpeg", provider="openrouter", api_key="sk-or-v1-k"
            )
            assert completion.content == "a mango"
            part = captured["json"]["messages"][1]["content"][0]
            assert part["type"] == "image_url"
            assert part["image_url"]["url"].startswith("data:image/jpeg;base64,")
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_transcribe_posts_multipart_to_groq():
    client = InferenceClient(make_settings())
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["body"] = request.content
                captured["headers"] = request.headers
                return Response(200, json={"text": " আমি চাই "})

            respx_mock.post("https://api.groq.com/openai/v1/audio/transcriptions").mock(side_effect=handler)
            text = await client.transcribe(
                b"voice", "audio/ogg", api_key="gsk_k", model="whisper-large-v3", language="bn", prompt="p"
            )
            assert text == "আমি চাই"
            assert captured["headers"]["Authorization"] == "Bearer gsk_k"
            assert b'name="language"' in captured["body"]
            assert b'filename="audio.ogg"' in captured["body"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_list_models_and_download():
    client = InferenceClient(make_settings())
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get("https://openrouter.ai/api/v1/models").mock(
                return_value=Response(200, json={"data": [{"id": "a:free"}]})
            )
            respx_mock.get("https://cdn.test/a.jpg").mock(
                return_value=Response(200, content=b"jpeg", headers={"content-type": "image/jpeg"})
            )
            assert await client.list_models() == [{"id": "a:free"}]
            assert await client.download("https://cdn.test/a.jpg", timeout=2) == (b"jpeg", "image/jpeg")
    finally:
        await client.close()


def test_estimate_token_usage():
    messages = [{"role": "user", "content": "abcd" * 3}, {"role": "user", "content": [{"type": "image_url"}]}]

    assert estimate_token_usage(messages, "abc", reported=17) == 17
    assert estimate_token_usage(messages, "abc") == 4
    assert estimate_token_usage(messages, None) == 3


@pytest.mark.asyncio
async def test_own_gateway_route():
    client = InferenceClient(make_settings(salesmanchatbot_api_base_url="https://gateway.test/api/external/v1/"))
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("https://gateway.test/api/external/v1/chat/completions").mock(
                return_value=Response(200, json={"choices": [{"message": {"content": "hi"}}]})
            )
            completion = await client.complete(
                [{"role": "user", "content": "x"}], "salesmanchatbot-pro", provider="salesmanchatbot", api_key="scb-1"
            )
            assert completion.content == "hi"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_unknown_provider_is_rejected_without_request():
    client = InferenceClient(make_settings())
    try:
        assert client.supports("salesmanchatbot")
        assert not client.supports("anthropic")
        with respx.mock(assert_all_called=False) as respx_mock:
            with pytest.raises(LLMProviderError):
                await client.complete([{"role": "user", "content": "x"}], "m", provider="anthropic", api_key="k")
            assert respx_mock.calls.call_count == 0
    finally:
        await client.close()

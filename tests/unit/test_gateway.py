import asyncio
import json

import httpx
import pytest

from nutriplan.core.errors import (
    GatewayRequestError,
    ImageSynthesisFailure,
    UpstreamEmptyResponse,
    UpstreamMalformedResponse,
)
from nutriplan.core.schemas import ChatMessage, UserProfile
from nutriplan.services.gateway import (
    GeminiGateway,
    accumulate_reply,
    build_image_prompt,
    build_plan_prompt,
    parse_llm_json,
)


def _text_response(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def _gateway(handler) -> GeminiGateway:
    return GeminiGateway(
        api_key="test-key",
        text_model="text-model",
        image_model="image-model",
        transport=httpx.MockTransport(handler),
    )


def _profile(**overrides) -> UserProfile:
    payload = {
        "age": 42,
        "gender": "female",
        "weight": 68.5,
        "height": 170,
        "activityLevel": "moderately active",
        "dietType": "Vegan",
        "persona": "Athlete",
        "goal": "Muscle Gain",
    }
    payload.update(overrides)
    return UserProfile.model_validate(payload)


def test_parse_llm_json_valid() -> None:
    payload = parse_llm_json('{"calories":500,"protein":20}')
    assert payload["calories"] == 500


def test_parse_llm_json_extracts_embedded_object() -> None:
    payload = parse_llm_json('Sure! ```json\n{"calories": 10}\n```')
    assert payload == {"calories": 10}


def test_parse_llm_json_malformed_raises() -> None:
    with pytest.raises(UpstreamMalformedResponse):
        parse_llm_json('{"calories":500,}')


def test_plan_prompt_carries_profile_and_overrides() -> None:
    prompt = build_plan_prompt(_profile(targetCalories=2400, macroFocus="High protein"))
    assert "42-year-old female (Athlete)" in prompt
    assert "Calorie Target Override: 2400 kcal" in prompt
    assert "Macro Focus: High protein" in prompt
    assert "Medical History: None" in prompt
    assert "Macro Focus" not in build_plan_prompt(_profile())


def test_image_prompt_rejects_unknown_subject() -> None:
    assert "yoga posture Tree Pose" in build_image_prompt("yoga", "Tree Pose", "")
    with pytest.raises(ValueError):
        build_image_prompt("dessert", "Cake", "")


def test_synthesize_plan_parses_response(fixture_dir) -> None:
    plan_text = (fixture_dir / "OK_PLAN.json").read_text(encoding="utf-8")
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["key"] = request.headers.get("x-goog-api-key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_text_response(plan_text))

    plan = asyncio.run(_gateway(handler).synthesize_plan(_profile()))

    assert plan.daily_calories == 2150
    assert len(plan.meal_plan) == 5
    assert seen["url"].endswith("/models/text-model:generateContent")
    assert seen["key"] == "test-key"
    assert seen["body"]["generationConfig"]["responseMimeType"] == "application/json"


def test_synthesize_plan_empty_text_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_text_response("   "))

    with pytest.raises(UpstreamEmptyResponse):
        asyncio.run(_gateway(handler).synthesize_plan(_profile()))


def test_synthesize_plan_wrong_shape_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_text_response('{"dailyCalories": 2000, "mealPlan": []}'))

    with pytest.raises(UpstreamMalformedResponse):
        asyncio.run(_gateway(handler).synthesize_plan(_profile()))


def test_http_error_maps_to_gateway_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, text="quota exhausted")

    with pytest.raises(GatewayRequestError) as exc:
        asyncio.run(_gateway(handler).synthesize_welcome_text("Amy", "amy@example.com", "NP-AB12C"))
    assert exc.value.status_code == 429
    assert "quota exhausted" in str(exc.value)


def test_missing_api_key_fails_fast() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    gateway = GeminiGateway(api_key="", transport=httpx.MockTransport(handler))
    with pytest.raises(GatewayRequestError):
        asyncio.run(gateway.estimate_nutrition(["Apple"]))


def test_synthesize_image_returns_data_url() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"candidates": [{"content": {"parts": [{"inlineData": {"mimeType": "image/jpeg", "data": "QUJD"}}]}}]},
        )

    url = asyncio.run(_gateway(handler).synthesize_image("meal", "Breakfast", "oats, berries"))

    assert url == "data:image/jpeg;base64,QUJD"
    assert seen["url"].endswith("/models/image-model:generateContent")
    assert seen["body"]["generationConfig"]["imageConfig"] == {"aspectRatio": "16:9"}


def test_synthesize_image_without_payload_fails() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_text_response("I cannot draw that."))

    with pytest.raises(ImageSynthesisFailure):
        asyncio.run(_gateway(handler).synthesize_image("workout", "Squat", "hips back"))


def test_estimate_nutrition_parses_totals() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_text_response('{"calories": 820, "protein": 51, "carbs": 77, "fats": 30}'))

    summary = asyncio.run(_gateway(handler).estimate_nutrition(["Salmon", "Rice"]))
    assert summary.calories == 820
    assert summary.fats == 30


def test_stream_chat_reply_yields_fragments_in_order() -> None:
    chunks = [_text_response("Eat "), _text_response("more "), _text_response("fibre.")]
    sse = "".join(f"data: {json.dumps(chunk)}\r\n\r\n" for chunk in chunks)
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, text=sse, headers={"Content-Type": "text/event-stream"})

    history = [ChatMessage(role="user", text="Hi"), ChatMessage(role="model", text="Hello")]
    reply = asyncio.run(accumulate_reply(_gateway(handler).stream_chat_reply(history, "What should I eat?")))

    assert reply == "Eat more fibre."
    assert "streamGenerateContent" in seen["url"]
    assert "alt=sse" in seen["url"]
    assert [item["role"] for item in seen["body"]["contents"]] == ["user", "model", "user"]


def test_accumulate_reply_keeps_partial_text() -> None:
    async def _fragments():
        yield "Partial "
        yield "answer"
        raise GatewayRequestError(provider="gemini", model="text-model", message="dropped")

    assert asyncio.run(accumulate_reply(_fragments())) == "Partial answer"

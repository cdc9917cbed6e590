import asyncio
import json
import logging
import os
from typing import Any, AsyncIterator, Optional, Protocol, Sequence

import httpx
from pydantic import ValidationError as SchemaValidationError

from nutriplan.core.errors import (
    GatewayRequestError,
    ImageSynthesisFailure,
    UpstreamEmptyResponse,
    UpstreamError,
    UpstreamMalformedResponse,
)
from nutriplan.core.schemas import ChatMessage, NutritionSummary, UserProfile, WellnessPlan

logger = logging.getLogger("uvicorn.error")

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
GEMINI_BASE_URL = os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta")
TEXT_MODEL = os.getenv("NUTRIPLAN_TEXT_MODEL", "gemini-3-flash-preview")
IMAGE_MODEL = os.getenv("NUTRIPLAN_IMAGE_MODEL", "gemini-2.5-flash-image")
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "90"))
LLM_CONNECT_TIMEOUT_SECONDS = float(os.getenv("LLM_CONNECT_TIMEOUT_SECONDS", "10"))
LLM_WRITE_TIMEOUT_SECONDS = float(os.getenv("LLM_WRITE_TIMEOUT_SECONDS", "30"))
LLM_POOL_TIMEOUT_SECONDS = float(os.getenv("LLM_POOL_TIMEOUT_SECONDS", "60"))
LLM_RETRY_COUNT = int(os.getenv("LLM_RETRY_COUNT", "1"))
LLM_RETRY_BACKOFF_SECONDS = float(os.getenv("LLM_RETRY_BACKOFF_SECONDS", "0.75"))

PROVIDER = "gemini"
SUBJECT_TYPES = ("meal", "workout", "yoga")

PLAN_SYSTEM_INSTRUCTION = (
    "You are a Senior Clinical Wellness Consultant. You provide professional, high-detail health protocols. "
    "Meal plans must include specific portion sizes and exact cooking steps. "
    "Activity plans must prioritize biomechanical safety and clear instructions."
)
WELCOME_SYSTEM_INSTRUCTION = (
    "You are the NutriPlan AI Automated Onboarding System. You send professional, clinical-grade "
    "welcome communications containing official identifiers."
)
NUTRITION_SYSTEM_INSTRUCTION = (
    "You are a clinical nutrition estimator. Provide reasonable estimates for calories, protein, carbs, "
    "and fats in grams based on food descriptions. Return JSON ONLY."
)
CHAT_SYSTEM_INSTRUCTION = (
    "You are a Clinical Nutrition Assistant. Be extremely concise and fast. Use Markdown. "
    "Focus on clinical accuracy."
)


def _http_timeout() -> httpx.Timeout:
    return httpx.Timeout(
        connect=LLM_CONNECT_TIMEOUT_SECONDS,
        read=LLM_TIMEOUT_SECONDS,
        write=LLM_WRITE_TIMEOUT_SECONDS,
        pool=LLM_POOL_TIMEOUT_SECONDS,
    )


def parse_llm_json(raw_text: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw_text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    start = raw_text.find("{")
    end = raw_text.rfind("}")
    if start != -1 and end != -1 and end > start:
        try:
            parsed = json.loads(raw_text[start : end + 1])
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass
    raise UpstreamMalformedResponse("Invalid JSON response from model")


def _obj(properties: dict[str, Any], required: Sequence[str]) -> dict[str, Any]:
    return {"type": "OBJECT", "properties": properties, "required": list(required)}


_STRING = {"type": "STRING"}
_NUMBER = {"type": "NUMBER"}
_STRING_LIST = {"type": "ARRAY", "items": _STRING}

PLAN_RESPONSE_SCHEMA = _obj(
    {
        "dailyCalories": _NUMBER,
        "macros": _obj({"protein": _NUMBER, "carbs": _NUMBER, "fats": _NUMBER}, ["protein", "carbs", "fats"]),
        "mealPlan": {
            "type": "ARRAY",
            "items": _obj(
                {
                    "meal": _STRING,
                    "time": _STRING,
                    "suggestions": _STRING_LIST,
                    "preparationSteps": _STRING_LIST,
                    "prepTime": _STRING,
                    "nutritionalBenefits": _STRING,
                },
                ["meal", "time", "suggestions", "preparationSteps", "prepTime"],
            ),
        },
        "workoutPlan": {
            "type": "ARRAY",
            "items": _obj(
                {
                    "name": _STRING,
                    "sets": _STRING,
                    "reps": _STRING,
                    "instructions": _STRING_LIST,
                    "precautions": _STRING,
                },
                ["name", "sets", "reps", "instructions", "precautions"],
            ),
        },
        "yogaPlan": {
            "type": "ARRAY",
            "items": _obj(
                {
                    "name": _STRING,
                    "duration": _STRING,
                    "instructions": _STRING_LIST,
                    "precautions": _STRING,
                },
                ["name", "duration", "instructions", "precautions"],
            ),
        },
        "hydration": _STRING,
        "lifestyleTips": _STRING_LIST,
        "medicalAdvice": _STRING,
        "disclaimer": _STRING,
    },
    [
        "dailyCalories",
        "macros",
        "mealPlan",
        "workoutPlan",
        "yogaPlan",
        "hydration",
        "lifestyleTips",
        "medicalAdvice",
        "disclaimer",
    ],
)

NUTRITION_RESPONSE_SCHEMA = _obj(
    {"calories": _NUMBER, "protein": _NUMBER, "carbs": _NUMBER, "fats": _NUMBER},
    ["calories", "protein", "carbs", "fats"],
)


def build_plan_prompt(profile: UserProfile) -> str:
    calibration = ""
    if profile.target_calories:
        calibration += f"\n    - Calorie Target Override: {profile.target_calories} kcal"
    if profile.macro_focus:
        calibration += f"\n    - Macro Focus: {profile.macro_focus}"
    return f"""Generate a COMPREHENSIVE clinical wellness strategy for a {profile.age}-year-old {profile.gender} ({profile.persona.value}).

    BIO-CONTEXT:
    - Stats: {profile.weight:g}kg, {profile.height:g}cm
    - Activity: {profile.activity_level.value}
    - Medical History: {profile.conditions or "None"}
    - Allergies: {profile.allergies or "None"}
    - Diet: {profile.diet_type.value} | Goal: {profile.goal.value}{calibration}

    REQUIRED SECTIONS (STRICT FORMATTING):
    1. Nutrition: 5 specific Meal Events.
       - suggestions: MUST be a detailed list of ingredients with exact weights/portions.
       - preparationSteps: MUST be professional, numbered, step-by-step culinary instructions.
    2. Strength Protocol (Workout): 4 exercises tailored to their profile.
       - instructions: 3-4 specific movement cues.
       - precautions: Age/condition-specific safety warnings.
    3. Mind-Body Protocol (Yoga): 4 poses/sequences.
       - instructions: Detailed alignment and breathing cues.
       - precautions: 1 critical contraindication warning.

    Return ONLY valid JSON. Ensure all instructions are actionable and precise."""


def build_welcome_prompt(name: str, email: str, clinical_id: str) -> str:
    return f"""Write a professional, welcoming, and high-detail clinical "Welcome Protocol" email for a new practitioner named {name} who just joined NutriPlan AI.

  MANDATORY DATA:
  - Clinical Practitioner ID: {clinical_id}
  - Registry Email: {email}

  The email should outline:
  1. Official confirmation of their new Clinical ID: {clinical_id}.
  2. Brief explanation of the AI's biometric synthesis capabilities.
  3. A note on data privacy and encryption standards.
  4. Steps to initialize their first wellness protocol.

  Keep it formal, medical-grade, and encouraging. Use Markdown formatting."""


def build_image_prompt(subject_type: str, name: str, context_text: str) -> str:
    if subject_type == "meal":
        subject = (
            f"A top-down professional food photography shot of a delicious and healthy {name}, "
            f"featuring ingredients like {context_text}. Served on a minimalist ceramic plate."
        )
    elif subject_type == "workout":
        subject = (
            "A fitness photography style shot showing the correct starting position or peak contraction "
            f"of the exercise: {name}. Character wearing athletic gear in a modern, brightly lit gym environment."
        )
    elif subject_type == "yoga":
        subject = (
            f"A peaceful wellness photography shot of the yoga posture {name}. Person in a calm, "
            "neutral-colored studio with soft morning light. Focus on poise and alignment."
        )
    else:
        raise ValueError(f"Unsupported image subject type: {subject_type}")
    return f"{subject} 4k resolution, clean background, sharp focus, professional lighting, realistic aesthetic."


def build_nutrition_prompt(food_names: Sequence[str]) -> str:
    return (
        f"Estimate total nutritional value for this list of foods consumed in one day: {', '.join(food_names)}. "
        "Return a single JSON object with estimated totals. Be realistic based on average portion sizes."
    )


def welcome_fallback_text(clinical_id: str) -> str:
    return f"Welcome to NutriPlan AI. Your account is now active. Your Clinical ID is {clinical_id}."


def _candidate_parts(data: Any) -> list[dict[str, Any]]:
    if not isinstance(data, dict):
        return []
    candidates = data.get("candidates") or []
    if not candidates:
        return []
    content = candidates[0].get("content") or {}
    return [part for part in content.get("parts") or [] if isinstance(part, dict)]


def extract_text(data: Any) -> str:
    return "".join(str(part.get("text") or "") for part in _candidate_parts(data) if "text" in part)


class AIGateway(Protocol):
    async def synthesize_plan(self, profile: UserProfile) -> WellnessPlan:
        ...

    async def synthesize_welcome_text(self, name: str, email: str, clinical_id: str) -> str:
        ...

    async def synthesize_image(self, subject_type: str, name: str, context_text: str) -> str:
        ...

    async def estimate_nutrition(self, food_names: Sequence[str]) -> NutritionSummary:
        ...

    def stream_chat_reply(self, history: Sequence[ChatMessage], message: str) -> AsyncIterator[str]:
        ...


class GeminiGateway:
    def __init__(
        self,
        api_key: Optional[str] = None,
        text_model: Optional[str] = None,
        image_model: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else GEMINI_API_KEY
        self.text_model = text_model or TEXT_MODEL
        self.image_model = image_model or IMAGE_MODEL
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=GEMINI_BASE_URL,
            timeout=_http_timeout(),
            transport=self._transport,
            headers={"Content-Type": "application/json", "x-goog-api-key": self.api_key},
        )

    async def _generate(self, model: str, body: dict[str, Any]) -> dict[str, Any]:
        if not self.api_key:
            raise GatewayRequestError(provider=PROVIDER, model=model, message="AI config missing")
        attempts = max(1, LLM_RETRY_COUNT + 1)
        async with self._client() as client:
            for idx in range(attempts):
                try:
                    response = await client.post(f"/models/{model}:generateContent", json=body)
                    response.raise_for_status()
                    return response.json()
                except httpx.ReadTimeout as exc:
                    if idx < attempts - 1:
                        await asyncio.sleep(LLM_RETRY_BACKOFF_SECONDS * (idx + 1))
                        continue
                    raise GatewayRequestError(
                        provider=PROVIDER,
                        model=model,
                        message="Gemini request timed out while waiting for response.",
                    ) from exc
                except httpx.HTTPStatusError as exc:
                    status = exc.response.status_code
                    detail = (exc.response.text or "").strip()[:220]
                    raise GatewayRequestError(
                        provider=PROVIDER,
                        model=model,
                        status_code=status,
                        message=f"Gemini request failed (status={status}): {detail or 'no response body'}",
                    ) from exc
                except (httpx.HTTPError, ValueError) as exc:
                    raise GatewayRequestError(
                        provider=PROVIDER,
                        model=model,
                        message=f"Gemini request failed: {str(exc)[:220]}",
                    ) from exc
        raise GatewayRequestError(provider=PROVIDER, model=model, message="Gemini request failed")

    async def _generate_text(
        self, prompt: str, system_instruction: str, generation_config: Optional[dict[str, Any]] = None
    ) -> str:
        body: dict[str, Any] = {
            "systemInstruction": {"parts": [{"text": system_instruction}]},
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
        }
        if generation_config:
            body["generationConfig"] = generation_config
        data = await self._generate(self.text_model, body)
        return extract_text(data).strip()

    async def synthesize_plan(self, profile: UserProfile) -> WellnessPlan:
        text = await self._generate_text(
            build_plan_prompt(profile),
            PLAN_SYSTEM_INSTRUCTION,
            {"responseMimeType": "application/json", "responseSchema": PLAN_RESPONSE_SCHEMA},
        )
        if not text:
            raise UpstreamEmptyResponse("AI Analysis Empty")
        try:
            return WellnessPlan.model_validate(parse_llm_json(text))
        except SchemaValidationError as exc:
            raise UpstreamMalformedResponse(f"Plan does not match the expected shape: {str(exc)[:220]}") from exc

    async def synthesize_welcome_text(self, name: str, email: str, clinical_id: str) -> str:
        return await self._generate_text(
            build_welcome_prompt(name, email, clinical_id), WELCOME_SYSTEM_INSTRUCTION
        )

    async def synthesize_image(self, subject_type: str, name: str, context_text: str) -> str:
        body = {
            "contents": [{"parts": [{"text": build_image_prompt(subject_type, name, context_text)}]}],
            "generationConfig": {"responseModalities": ["IMAGE"], "imageConfig": {"aspectRatio": "16:9"}},
        }
        data = await self._generate(self.image_model, body)
        for part in _candidate_parts(data):
            inline = part.get("inlineData") or part.get("inline_data")
            if inline and inline.get("data"):
                mime_type = inline.get("mimeType") or inline.get("mime_type") or "image/png"
                return f"data:{mime_type};base64,{inline['data']}"
        raise ImageSynthesisFailure(f"No image payload returned for {subject_type} '{name}'")

    async def estimate_nutrition(self, food_names: Sequence[str]) -> NutritionSummary:
        text = await self._generate_text(
            build_nutrition_prompt(food_names),
            NUTRITION_SYSTEM_INSTRUCTION,
            {"responseMimeType": "application/json", "responseSchema": NUTRITION_RESPONSE_SCHEMA},
        )
        if not text:
            raise UpstreamEmptyResponse("Estimation Failed")
        try:
            return NutritionSummary.model_validate(parse_llm_json(text))
        except SchemaValidationError as exc:
            raise UpstreamMalformedResponse(f"Nutrition estimate is malformed: {str(exc)[:220]}") from exc

    async def stream_chat_reply(self, history: Sequence[ChatMessage], message: str) -> AsyncIterator[str]:
        if not self.api_key:
            raise GatewayRequestError(provider=PROVIDER, model=self.text_model, message="AI config missing")
        contents = [{"role": item.role, "parts": [{"text": item.text}]} for item in history if item.text]
        contents.append({"role": "user", "parts": [{"text": message}]})
        body = {
            "systemInstruction": {"parts": [{"text": CHAT_SYSTEM_INSTRUCTION}]},
            "contents": contents,
        }
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST", f"/models/{self.text_model}:streamGenerateContent", params={"alt": "sse"}, json=body
                ) as response:
                    response.raise_for_status()
                    async for line in response.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        payload = line[len("data:"):].strip()
                        if not payload:
                            continue
                        try:
                            chunk = json.loads(payload)
                        except json.JSONDecodeError:
                            logger.warning("chat_stream_bad_chunk model=%s", self.text_model)
                            continue
                        yield extract_text(chunk)
        except httpx.HTTPError as exc:
            # Mid-stream failure ends the reply; the caller keeps what arrived.
            logger.warning("chat_stream_terminated model=%s detail=%s", self.text_model, str(exc)[:220])


async def welcome_text_or_fallback(gateway: AIGateway, name: str, email: str, clinical_id: str) -> str:
    try:
        text = await gateway.synthesize_welcome_text(name, email, clinical_id)
    except UpstreamError as exc:
        logger.warning("welcome_text_fallback clinical_id=%s detail=%s", clinical_id, str(exc))
        text = ""
    return text.strip() or welcome_fallback_text(clinical_id)


async def accumulate_reply(fragments: AsyncIterator[str]) -> str:
    """Concatenate streamed fragments in receipt order.

    A stream that raises part-way still returns the text received so far.
    """
    buffer: list[str] = []
    try:
        async for fragment in fragments:
            buffer.append(fragment or "")
    except UpstreamError as exc:
        logger.warning("chat_stream_incomplete detail=%s", str(exc))
    return "".join(buffer)


def get_ai_gateway() -> AIGateway:
    return GeminiGateway()

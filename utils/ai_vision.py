"""Gemini Vision integration for waste analysis and collection verification."""
from __future__ import annotations

import json
import re
from dataclasses import asdict, dataclass
from typing import Any, Dict

from google import genai
from google.genai import types

from utils.errors import VerificationError

EXTENSION_NAME = "waste_vision"


@dataclass(frozen=True)
class WasteAnalysis:
    waste_type: str
    quantity: str
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class WasteVerification:
    type_match: bool
    quantity_match: bool
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _first_json_block(text: str) -> str:
    """Extract the first JSON object block from free-form text."""
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end != -1 and end > start:
        return text[start : end + 1]
    return text


def parse_json_payload(raw_text: str) -> Dict[str, Any]:
    """Parse model output as a JSON object, tolerating code fences and surrounding prose."""
    cleaned = (raw_text or "").strip()
    if not cleaned:
        raise VerificationError("Vision model returned an empty response")
    cleaned = re.sub(r"^```[a-zA-Z0-9_-]*", "", cleaned).strip()
    cleaned = re.sub(r"```$", "", cleaned).strip()
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError:
        try:
            payload = json.loads(_first_json_block(cleaned))
        except json.JSONDecodeError as exc:
            raise VerificationError("Vision model returned non-JSON output") from exc
    if not isinstance(payload, dict):
        raise VerificationError("Vision model returned an unexpected JSON shape")
    return payload


def _pick(payload: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in payload:
            return payload[key]
    return None


def _coerce_confidence(value: Any) -> float:
    # JSON booleans are not confidences even though bool subclasses int.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise VerificationError("Missing numeric field: confidence")
    confidence = float(value)
    if not 0.0 <= confidence <= 1.0:
        raise VerificationError("Confidence must be between 0 and 1")
    return confidence


def _coerce_flag(value: Any, field: str) -> bool:
    if not isinstance(value, bool):
        raise VerificationError(f"Missing boolean field: {field}")
    return value


def _coerce_text(value: Any, field: str) -> str:
    text = str(value).strip() if value is not None else ""
    if not text:
        raise VerificationError(f"Missing required field: {field}")
    return text


def parse_analysis(payload: Dict[str, Any]) -> WasteAnalysis:
    return WasteAnalysis(
        waste_type=_coerce_text(_pick(payload, "waste_type", "wasteType"), "waste_type"),
        quantity=_coerce_text(_pick(payload, "quantity"), "quantity"),
        confidence=_coerce_confidence(payload.get("confidence")),
    )


def parse_verification(payload: Dict[str, Any]) -> WasteVerification:
    return WasteVerification(
        type_match=_coerce_flag(_pick(payload, "type_match", "wasteTypeMatch"), "type_match"),
        quantity_match=_coerce_flag(_pick(payload, "quantity_match", "quantityMatch"), "quantity_match"),
        confidence=_coerce_confidence(payload.get("confidence")),
    )


def build_analysis_prompt() -> str:
    return (
        "You are an expert in waste management and recycling. Analyse this image and provide: "
        "a detailed description of the waste items (specific contents and materials visible, not just a category), "
        "the estimated quantity with a unit (for example \"0.5 kg\" or \"2 liters\"), "
        "and your confidence in this assessment as a number between 0 and 1. "
        "Respond with JSON only, no markdown: "
        "{\"waste_type\": \"description of the waste items\", \"quantity\": \"estimated quantity with unit\", "
        "\"confidence\": 0.85}"
    )


def build_verification_prompt(expected_type: str, expected_amount: str) -> str:
    return (
        "You are an expert in waste management and recycling. Analyse this image of collected waste and provide: "
        f"whether the waste type matches: {expected_type}; "
        f"whether the estimated quantity matches: {expected_amount}; "
        "and your confidence in this assessment as a number between 0 and 1. "
        "Respond with JSON only, no markdown: "
        "{\"type_match\": true, \"quantity_match\": false, \"confidence\": 0.82}"
    )


class WasteVisionClient:
    """Explicitly constructed Gemini client; one instance per application process."""

    def __init__(self, api_key: str, model_name: str = "gemini-2.5-flash", timeout_seconds: float = 30, client=None, logger=None):
        self.model_name = model_name
        self.timeout_seconds = timeout_seconds
        self.logger = logger
        self._client = client
        if self._client is None and api_key:
            self._client = genai.Client(
                api_key=api_key,
                http_options=types.HttpOptions(timeout=int(timeout_seconds * 1000)),
            )

    @classmethod
    def from_config(cls, config, logger=None) -> "WasteVisionClient":
        return cls(
            api_key=config.get("GEMINI_API_KEY") or "",
            model_name=config.get("GEMINI_VISION_MODEL", "gemini-2.5-flash"),
            timeout_seconds=float(config.get("VERIFICATION_TIMEOUT_SECONDS", 30)),
            logger=logger,
        )

    @property
    def configured(self) -> bool:
        return self._client is not None

    def close(self) -> None:
        client, self._client = self._client, None
        closer = getattr(client, "close", None)
        if callable(closer):
            closer()

    def _generate(self, image_bytes: bytes, mime_type: str, prompt: str) -> Dict[str, Any]:
        if not self._client:
            raise VerificationError("GEMINI_API_KEY is not configured")
        if not image_bytes:
            raise VerificationError("No image supplied for analysis")
        if self.logger:
            self.logger.info("Dispatching Gemini Vision request", extra={"model": self.model_name})
        try:
            response = self._client.models.generate_content(
                model=self.model_name,
                contents=[
                    types.Part.from_bytes(data=image_bytes, mime_type=mime_type),
                    types.Part.from_text(text=prompt),
                ],
                config=types.GenerateContentConfig(response_mime_type="application/json"),
            )
        except Exception as exc:  # SDK raises transport, timeout and API errors alike
            if self.logger:
                self.logger.warning("Gemini Vision request failed", extra={"error": str(exc)})
            raise VerificationError("Could not analyse the image. Try again or upload a clearer photo.") from exc
        return parse_json_payload(getattr(response, "text", None) or "")

    def analyze(self, image_bytes: bytes, mime_type: str) -> WasteAnalysis:
        return parse_analysis(self._generate(image_bytes, mime_type, build_analysis_prompt()))

    def verify(self, image_bytes: bytes, mime_type: str, expected_type: str, expected_amount: str) -> WasteVerification:
        prompt = build_verification_prompt(expected_type, expected_amount)
        return parse_verification(self._generate(image_bytes, mime_type, prompt))


def init_vision(app, client: WasteVisionClient | None = None) -> WasteVisionClient:
    vision = client or WasteVisionClient.from_config(app.config, logger=app.logger)
    app.extensions[EXTENSION_NAME] = vision
    return vision


def get_vision(app) -> WasteVisionClient:
    return app.extensions[EXTENSION_NAME]

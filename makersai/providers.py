# makersai/providers.py
"""Inference providers: Gemini/Imagen through ``google-genai`` and OpenAI-compatible APIs.

Both implement ``infer(spec) -> dict``. Text stages request JSON that matches
the stage's pydantic response schema; the image stage returns
``{"imageUrl": "data:image/png;base64,..."}``. Providers make exactly one call
per ``infer`` and let exceptions propagate; :class:`StageExecutor` maps them to
stage failures.
"""

from __future__ import annotations

import base64
import json
import logging
import threading
from typing import Any, Dict, List, Optional

from google import genai
from google.genai import types
from openai import OpenAI
from pydantic import BaseModel

from makersai.config import GeminiSettings, ModelSettings, OpenAISettings, Settings
from makersai.stages import StageKind, StageSpec

logger = logging.getLogger(__name__)

PNG_MIME_TYPE = "image/png"


def to_data_url(image_bytes: bytes, mime_type: str = PNG_MIME_TYPE) -> str:
    encoded = base64.b64encode(image_bytes).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


def _parse_json_payload(text: Optional[str]) -> Dict[str, Any]:
    if not text or not text.strip():
        raise ValueError("Model returned an empty response.")
    parsed = json.loads(text.strip())
    if not isinstance(parsed, dict):
        raise TypeError(f"Expected a JSON object, received {type(parsed).__name__}.")
    return parsed


class GeminiProvider:
    """Gemini for structured text/vision stages and Imagen for previews."""

    def __init__(
        self,
        gemini: GeminiSettings,
        model: ModelSettings,
        client: Optional[Any] = None,
    ) -> None:
        self.gemini = gemini
        self.model = model
        self._client = client
        self._client_lock = threading.Lock()

    def get_client(self):
        """Return the ``genai.Client``, creating it on first use."""
        if self._client is not None:
            return self._client
        with self._client_lock:
            if self._client is None:
                if not self.gemini.api_key:
                    raise RuntimeError(
                        "Google API key not found. Set GEMINI_API_KEY or GOOGLE_API_KEY."
                    )
                self._client = genai.Client(
                    api_key=self.gemini.api_key,
                    http_options=types.HttpOptions(
                        timeout=int(self.model.request_timeout_seconds * 1000)
                    ),
                )
                logger.info("✅ Google API client configured (model %s)", self.gemini.model_name)
        return self._client

    def infer(self, spec: StageSpec) -> Dict[str, Any]:
        if spec.stage is StageKind.IMAGE_SYNTHESIS:
            return self._generate_image(spec)
        return self._generate_structured(spec)

    def _generate_structured(self, spec: StageSpec) -> Dict[str, Any]:
        client = self.get_client()
        generation_config = types.GenerateContentConfig(
            temperature=self.model.temperature,
            system_instruction=spec.system_instruction,
            response_mime_type="application/json",
            response_schema=spec.response_schema,
        )

        if "2.5-pro" in self.gemini.model_name and self.gemini.use_thinking:
            generation_config.thinking_config = types.ThinkingConfig(
                thinking_budget=self.gemini.thinking_budget
            )

        response = client.models.generate_content(
            model=self.gemini.model_name,
            contents=self._build_contents(spec),
            config=generation_config,
        )

        parsed_obj = getattr(response, "parsed", None)
        if isinstance(parsed_obj, BaseModel):
            return parsed_obj.model_dump()
        return _parse_json_payload(response.text)

    @staticmethod
    def _build_contents(spec: StageSpec):
        if spec.user_binary is None:
            return spec.user_text
        return [
            types.Part.from_bytes(data=spec.user_binary.data, mime_type=spec.user_binary.mime_type),
            spec.user_text,
        ]

    def _generate_image(self, spec: StageSpec) -> Dict[str, Any]:
        client = self.get_client()
        response = client.models.generate_images(
            model=self.gemini.image_model,
            prompt=spec.user_text,
            config=types.GenerateImagesConfig(
                number_of_images=1,
                output_mime_type=PNG_MIME_TYPE,
                aspect_ratio="1:1",
            ),
        )
        images = getattr(response, "generated_images", None) or []
        if not images or images[0].image is None or not images[0].image.image_bytes:
            raise ValueError("No image was generated.")
        return {"imageUrl": to_data_url(images[0].image.image_bytes)}


class OpenAIProvider:
    """OpenAI-compatible chat completions in JSON mode plus the images endpoint."""

    def __init__(
        self,
        openai_settings: OpenAISettings,
        model: ModelSettings,
        client: Optional[Any] = None,
    ) -> None:
        self.openai = openai_settings
        self.model = model
        self._client = client
        self._client_lock = threading.Lock()

    def get_client(self):
        if self._client is not None:
            return self._client
        with self._client_lock:
            if self._client is None:
                if not self.openai.api_key:
                    raise RuntimeError("OpenAI API key not found. Set OPENAI_API_KEY.")
                self._client = OpenAI(
                    api_key=self.openai.api_key,
                    base_url=self.openai.base_url or None,
                    timeout=self.model.request_timeout_seconds,
                    max_retries=0,
                )
                logger.info("✅ OpenAI client configured (model %s)", self.openai.model_name)
        return self._client

    def infer(self, spec: StageSpec) -> Dict[str, Any]:
        if spec.stage is StageKind.IMAGE_SYNTHESIS:
            return self._generate_image(spec)
        return self._generate_structured(spec)

    def _generate_structured(self, spec: StageSpec) -> Dict[str, Any]:
        client = self.get_client()
        schema_hint = json.dumps(spec.response_schema.model_json_schema(), ensure_ascii=False)
        system_message = (
            f"{spec.system_instruction}\n\n"
            f"Respond with a single JSON object that matches this JSON schema:\n{schema_hint}"
        )
        response = client.chat.completions.create(
            model=self.openai.model_name,
            temperature=self.model.temperature,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": system_message},
                {"role": "user", "content": self._build_user_content(spec)},
            ],
        )
        if not response.choices:
            raise ValueError("Model returned no choices.")
        return _parse_json_payload(response.choices[0].message.content)

    @staticmethod
    def _build_user_content(spec: StageSpec):
        if spec.user_binary is None:
            return spec.user_text
        content: List[Dict[str, Any]] = [
            {"type": "text", "text": spec.user_text},
            {
                "type": "image_url",
                "image_url": {
                    "url": to_data_url(spec.user_binary.data, spec.user_binary.mime_type)
                },
            },
        ]
        return content

    def _generate_image(self, spec: StageSpec) -> Dict[str, Any]:
        client = self.get_client()
        kwargs: Dict[str, Any] = {
            "model": self.openai.image_model,
            "prompt": spec.user_text,
            "n": 1,
            "size": "1024x1024",
        }
        if not self.openai.image_model.startswith("gpt-image"):
            kwargs["response_format"] = "b64_json"
        response = client.images.generate(**kwargs)
        if not response.data or not response.data[0].b64_json:
            raise ValueError("No image was generated.")
        return {"imageUrl": f"data:{PNG_MIME_TYPE};base64,{response.data[0].b64_json}"}


def build_provider(settings: Settings):
    """Create the provider selected by ``settings.model.provider``."""
    provider = settings.model.provider
    if provider == "gemini":
        return GeminiProvider(settings.gemini, settings.model)
    if provider == "openai":
        return OpenAIProvider(settings.openai, settings.model)
    raise ValueError(f"Unknown provider: {provider}. Expected 'gemini' or 'openai'.")

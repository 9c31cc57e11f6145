# src/llm/adapters/google_adapter.py — v2
"""Google Gemini adapter implementing BaseLLMClient.

Uses the google-generativeai SDK (optional extra ``bookweb[google]``).
"""

from __future__ import annotations

import base64
import time
from typing import Any

from pydantic import BaseModel

from bookweb.llm.base_client import BaseLLMClient
from bookweb.llm.models import ImagePart, LLMResponse, Message


class GoogleAdapter(BaseLLMClient):
    """Google Gemini adapter."""

    def __init__(self, model: str = "gemini-2.0-flash", api_key: str = "", **kwargs: Any):
        self._model = model
        self._api_key = api_key

    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.0,
        response_format: type[BaseModel] | None = None,
    ) -> LLMResponse:
        import google.generativeai as genai

        genai.configure(api_key=self._api_key)
        model = genai.GenerativeModel(
            self._model,
            system_instruction=system,
        )

        gen_config: dict[str, Any] = {
            "max_output_tokens": max_tokens,
            "temperature": temperature,
        }
        if response_format is not None:
            gen_config["response_mime_type"] = "application/json"
            gen_config["response_schema"] = response_format

        contents = [self._to_api_content(m) for m in messages if m.role != "system"]

        t0 = time.monotonic()
        resp = await model.generate_content_async(
            contents, generation_config=gen_config,
        )
        latency = int((time.monotonic() - t0) * 1000)

        usage = getattr(resp, "usage_metadata", None)
        return LLMResponse(
            content=resp.text or "",
            input_tokens=getattr(usage, "prompt_token_count", 0) if usage else 0,
            output_tokens=getattr(usage, "candidates_token_count", 0) if usage else 0,
            model=self._model,
            provider="google",
            latency_ms=latency,
            raw_response=resp,
        )

    @staticmethod
    def _to_api_content(m: Message) -> dict[str, Any]:
        role = "model" if m.role == "assistant" else "user"
        if isinstance(m.content, str):
            return {"role": role, "parts": [{"text": m.content}]}
        parts: list[dict[str, Any]] = []
        for part in m.content:
            if isinstance(part, ImagePart):
                parts.append({
                    "inline_data": {
                        "mime_type": part.media_type,
                        "data": base64.b64decode(part.data),
                    }
                })
            else:
                parts.append({"text": part.text})
        return {"role": role, "parts": parts}

    @property
    def model_id(self) -> str:
        return self._model

    @property
    def provider_name(self) -> str:
        return "google"

"""Style conversion collaborator: photo or character notes in, styled image out."""

from __future__ import annotations

import base64
from typing import Dict, List, Optional, Protocol

import httpx
from loguru import logger

from amico.core.errors import StyleConversionError
from amico.core.models import CharacterMeta

IMAGE_STYLE_PROMPT = (
    "Transform the subject in this image into a clay figurine character. "
    "Full body, facing forward, A-pose with arms away from the torso and legs apart, "
    "plain white background, single subject, no text."
)

TEXT_STYLE_PROMPT = (
    "Create a single clay figurine character: {description}. "
    "Full body, facing forward, A-pose with arms away from the torso and legs apart, "
    "plain white background, no text."
)

PROFILE_HINT_LIMIT = 800


class StyleConverter(Protocol):
    """Anything that turns input into a ``data:<mime>;base64,...`` styled image."""

    async def convert_image(self, data: bytes, mime_type: str) -> str: ...

    async def generate_from_text(self, meta: CharacterMeta) -> str: ...


def describe_character(meta: CharacterMeta) -> str:
    parts = [f"{meta.gender or 'female'} character"]
    if meta.name:
        parts.append(f"named {meta.name}")
    description = " ".join(parts)
    if meta.profile.strip():
        description += f". Notes: {meta.profile.strip()[:PROFILE_HINT_LIMIT]}"
    return description


class GeminiStyleClient:
    """Calls a Gemini-compatible ``generateContent`` endpoint that returns images."""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        model: str,
        timeout: float = 120.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def convert_image(self, data: bytes, mime_type: str) -> str:
        parts = [
            {"text": IMAGE_STYLE_PROMPT},
            {"inline_data": {"mime_type": mime_type, "data": base64.b64encode(data).decode("ascii")}},
        ]
        return await self._generate(parts)

    async def generate_from_text(self, meta: CharacterMeta) -> str:
        prompt = TEXT_STYLE_PROMPT.format(description=describe_character(meta))
        return await self._generate([{"text": prompt}])

    async def _generate(self, parts: List[Dict[str, object]]) -> str:
        url = f"{self.base_url}/v1beta/models/{self.model}:generateContent"
        body = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "responseModalities": ["TEXT", "IMAGE"],
                "imageConfig": {"aspectRatio": "1:1", "imageSize": "1K"},
            },
        }
        try:
            response = await self._client.post(
                url,
                params={"key": self.api_key},
                headers={"Authorization": f"Bearer {self.api_key}"},
                json=body,
                timeout=self.timeout,
            )
        except httpx.HTTPError as exc:
            raise StyleConversionError(f"Style request failed: {exc}") from exc
        if response.status_code >= 400:
            detail = response.text.strip()[:500]
            logger.warning(f"Style API error {response.status_code}: {detail[:200]}")
            raise StyleConversionError(f"Style API error {response.status_code}", detail=detail)
        try:
            payload = response.json()
        except ValueError as exc:
            raise StyleConversionError("Style API returned invalid JSON") from exc
        return self._extract_image(payload)

    def _extract_image(self, payload: object) -> str:
        candidates = payload.get("candidates") if isinstance(payload, dict) else None
        parts = []
        if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict):
            content = candidates[0].get("content")
            if isinstance(content, dict) and isinstance(content.get("parts"), list):
                parts = content["parts"]
        for part in parts:
            if not isinstance(part, dict):
                continue
            inline = part.get("inlineData") or part.get("inline_data")
            if not isinstance(inline, dict) or not inline.get("data"):
                continue
            mime_type = inline.get("mimeType") or inline.get("mime_type") or "image/png"
            return f"data:{mime_type};base64,{inline['data']}"
        raise StyleConversionError("Style API returned no image", detail=str(payload)[:500])

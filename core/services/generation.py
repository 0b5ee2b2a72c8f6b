"""
Character/prediction text and illustration generation over OpenAI-compatible HTTP APIs.
"""

from __future__ import annotations

import asyncio
import json
import random
import re
from dataclasses import dataclass
from typing import Optional

import httpx

from core.config import Settings, logger
from core.errors import GenerationError, ImageProviderError, IncompleteResultError

REQUIRED_KEYS = ("characterName", "characterDescription", "prediction")
RETRYABLE_STATUS = {429, 500, 502, 503, 504}

SYSTEM_PROMPT = (
    "You are a playful fortune teller. Return ONLY compact JSON with keys: "
    "characterName, characterDescription, prediction."
)

_JSON_BLOCK = re.compile(r"\{.*\}", re.DOTALL)


@dataclass(frozen=True)
class CharacterResult:
    character_name: str
    character_description: str
    prediction: str


def parse_character_response(raw: str) -> dict:
    """Parse the model's JSON, recovering the outermost brace block if prose surrounds it."""
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        match = _JSON_BLOCK.search(raw or "")
        if not match:
            return {}
        try:
            parsed = json.loads(match.group(0))
        except ValueError:
            return {}
    return parsed if isinstance(parsed, dict) else {}


def to_character_result(parsed: dict) -> CharacterResult:
    values = {}
    for key in REQUIRED_KEYS:
        value = parsed.get(key)
        if not isinstance(value, str) or not value.strip():
            raise IncompleteResultError(f"Character response missing {key}")
        values[key] = value.strip()
    return CharacterResult(
        character_name=values["characterName"],
        character_description=values["characterDescription"],
        prediction=values["prediction"],
    )


def build_image_prompt(character: CharacterResult, theme: str) -> str:
    return " ".join(
        [
            "Generate a funny historical character matching the prediction.",
            "Create a single, front-facing, bust portrait cartoon illustration.",
            "Style: playful, caricature, thick outlines, flat shading, vibrant colors.",
            "No text, no letters, no watermark, no captions.",
            f"Character: {character.character_name}.",
            f"Bio: {character.character_description}.",
            f"Prediction: {character.prediction}.",
            f"Theme: {theme}.",
            "Show expression and props that reflect the prediction theme.",
        ]
    )


class _OpenAIClient:
    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                limits=httpx.Limits(max_keepalive_connections=10, max_connections=100),
            )
        return self._client

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.settings.openai_api_key}",
            "Content-Type": "application/json",
        }

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


async def _sleep_backoff(attempt: int, base: float = 0.5, jitter: float = 0.25) -> None:
    await asyncio.sleep(base * (2 ** attempt) + random.uniform(0, jitter))


class CharacterGenerator(_OpenAIClient):
    """Invents a humorous historical character and a prediction for the caller."""

    retry_max = 1

    async def generate(self, name: str, birth_month: str, birth_year: str, question: str) -> CharacterResult:
        if not self.settings.openai_api_key:
            raise GenerationError("OPENAI_API_KEY is not configured")

        birthdate = f"01-{birth_month}-{birth_year}"
        user_prompt = (
            "Create a funny imaginary historical character (birthday-aligned) and a prediction.\n"
            f"Name: {name}\nBirthdate: {birthdate}\nQuestion: {question}\n"
            "Respond ONLY valid JSON with keys: characterName, characterDescription, prediction."
        )
        body = {
            "model": self.settings.openai_text_model,
            "temperature": 0.8,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": user_prompt},
            ],
        }
        data = await self._post_with_retry("/chat/completions", body)
        try:
            raw = data["choices"][0]["message"]["content"] or "{}"
        except (KeyError, IndexError, TypeError) as exc:
            raise IncompleteResultError("Character response had no message content") from exc
        return to_character_result(parse_character_response(raw))

    async def _post_with_retry(self, path: str, body: dict) -> dict:
        client = self._get_client()
        url = f"{self.settings.openai_base_url}{path}"
        timeout = httpx.Timeout(self.settings.text_generation_timeout_seconds)
        for attempt in range(self.retry_max + 1):
            try:
                response = await client.post(url, json=body, headers=self._headers(), timeout=timeout)
            except httpx.RequestError as exc:
                if attempt >= self.retry_max:
                    raise GenerationError(f"Text provider request failed: {exc}") from exc
                await _sleep_backoff(attempt)
                continue

            if response.status_code in RETRYABLE_STATUS and attempt < self.retry_max:
                await _sleep_backoff(attempt)
                continue
            if response.status_code >= 400:
                raise GenerationError(f"Text provider returned status {response.status_code}")
            try:
                return response.json()
            except ValueError as exc:
                raise GenerationError("Text provider returned a non-JSON body") from exc
        raise GenerationError("Text provider retries exhausted")


class ImageGenerator(_OpenAIClient):
    """Produces a PNG data URI, or an empty string when the provider returns nothing."""

    async def generate(self, prompt: str) -> str:
        if not self.settings.openai_api_key:
            raise ImageProviderError("OPENAI_API_KEY is not configured")

        b64 = await self._request_image(prompt)
        if not b64:
            # one more attempt on an empty payload
            b64 = await self._request_image(prompt)
        return f"data:image/png;base64,{b64}" if b64 else ""

    async def _request_image(self, prompt: str) -> str:
        client = self._get_client()
        try:
            response = await client.post(
                f"{self.settings.openai_base_url}/images/generations",
                json={
                    "model": self.settings.openai_image_model,
                    "prompt": prompt,
                    "size": "1024x1024",
                    "response_format": "b64_json",
                    "n": 1,
                },
                headers=self._headers(),
                timeout=httpx.Timeout(self.settings.image_generation_timeout_seconds),
            )
        except httpx.RequestError as exc:
            raise ImageProviderError(f"Image provider request failed: {exc}") from exc
        if response.status_code >= 400:
            raise ImageProviderError(f"Image provider returned status {response.status_code}")
        try:
            data = response.json()
            return (data.get("data") or [{}])[0].get("b64_json") or ""
        except (ValueError, AttributeError, IndexError) as exc:
            logger.warning(f"Image provider returned an unexpected body: {exc}")
            return ""

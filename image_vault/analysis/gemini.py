"""HTTP client for the Gemini vision model."""

import asyncio
import base64
import logging
from typing import Optional

import httpx

from image_vault.analysis.models import AnalysisOutcome, AnalysisResult
from image_vault.analysis.parsing import MODEL_TAG_LIMIT, parse_model_response

log = logging.getLogger(__name__)

ANALYSIS_PROMPT = """Analyze this image and return ONLY a valid JSON object with this exact structure:
{
  "description": "A detailed 2-3 sentence description of what you see in the image, including objects, colors, setting, and style",
  "tags": ["tag1", "tag2", "tag3", "tag4", "tag5"]
}

Rules:
- Return ONLY the JSON object, no other text
- Description should be 2-3 sentences describing key visual elements
- Tags should be 5-8 relevant, lowercase, searchable keywords
- Focus on objects, colors, emotions, style, setting, actions
- No markdown formatting, no code blocks, just pure JSON"""

class GeminiAnalyzer:
    """Sends image bytes to Gemini and extracts a description and tags."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: Optional[str],
        model: str = "gemini-2.5-flash",
        api_base: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: float = 30.0,
        max_attempts: int = 1,
        backoff_seconds: float = 1.0,
    ):
        self.client = client
        self.api_key = api_key
        self.model = model
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds

    @property
    def endpoint(self) -> str:
        return f"{self.api_base}/models/{self.model}:generateContent"

    def _payload(self, image_bytes: bytes, mime_type: str) -> dict:
        return {
            "contents": [
                {
                    "parts": [
                        {"text": ANALYSIS_PROMPT},
                        {
                            "inline_data": {
                                "mime_type": mime_type,
                                "data": base64.b64encode(image_bytes).decode("ascii"),
                            }
                        },
                    ]
                }
            ]
        }

    @staticmethod
    def _response_text(data) -> str:
        if not isinstance(data, dict):
            raise ValueError("Gemini response is not a JSON object")
        candidates = data.get("candidates")
        if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
            raise ValueError("Gemini response has no candidates")
        content = candidates[0].get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list):
            raise ValueError("Gemini response has no content parts")
        text = "".join(str(part.get("text") or "") for part in parts if isinstance(part, dict))
        if not text.strip():
            raise ValueError("Gemini response has no text")
        return text

    async def _generate(self, image_bytes: bytes, mime_type: str) -> str:
        """
            POSTs to generateContent, retrying transport and HTTP errors.
            Raises the last httpx.HTTPError, or ValueError when the body has no text.
        """
        payload = self._payload(image_bytes, mime_type)
        attempt = 1
        while True:
            try:
                response = await self.client.post(
                    self.endpoint,
                    params={"key": self.api_key},
                    json=payload,
                    timeout=self.timeout,
                )
                response.raise_for_status()
                return self._response_text(response.json())
            except httpx.HTTPError as e:
                log.warning(
                    "Gemini request failed: %s (attempt %d/%d)", e, attempt, self.max_attempts
                )
                if attempt >= self.max_attempts:
                    raise
                await asyncio.sleep(self.backoff_seconds * (2 ** attempt))
                attempt += 1

    async def analyze(self, image_bytes: bytes, mime_type: Optional[str] = None) -> AnalysisOutcome:
        """Never raises; failures come back as an error outcome."""
        if not self.api_key:
            return AnalysisOutcome.failure("GEMINI_API_KEY is not configured")

        try:
            text = await self._generate(image_bytes, mime_type or "image/jpeg")
        except (httpx.HTTPError, ValueError) as e:
            return AnalysisOutcome.failure(f"Gemini request failed: {e}")

        description, tags = parse_model_response(text, limit=MODEL_TAG_LIMIT)
        if not description:
            return AnalysisOutcome.failure("Gemini response did not contain a description")
        log.info("Gemini analysis produced %d tags", len(tags))
        return AnalysisOutcome.success(
            AnalysisResult(description=description, tags=tags, source="gemini")
        )

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import google.generativeai as genai
import httpx
import openai
from google.api_core import exceptions as google_exceptions
from openai import OpenAI

from adintel.ads.classifier import ROLE_MEDIA, ROLE_STRATEGIC, ProviderRoute, routes_for
from adintel.config import settings
from adintel.db.enums import ContentCategoryEnum
from adintel.services.rate_limiter import PROVIDER_GEMINI, PROVIDER_OPENAI

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 409, 425, 429, 500, 502, 503, 504})

STRATEGIC_PROMPT = """You review a competitor ad scraped from the Meta Ad Library for an advertising agency
that tracks competitor campaigns. Using the ad data (and any media analysis attached to it), write a
comprehensive strategic summary and a rewritten version of the copy that could be reused as fresh creative.
Keep the language plain and human, focus on actionable insights, and return JSON only:
{
  "summary": "strategic analysis of the ad approach and effectiveness",
  "rewrittenAdCopy": "improved version optimized for conversion",
  "keyInsights": ["insight", "..."],
  "competitorStrategy": "overall strategy assessment",
  "recommendations": ["recommendation", "..."]
}"""

IMAGE_PROMPT = """Analyze the creative of this ad image together with its copy. Return JSON only:
{
  "visualElements": ["key visual elements, design components, visual hierarchy"],
  "colorPsychology": "analysis of color choices",
  "designRecommendations": ["specific design improvements"],
  "brandConsistency": "assessment of brand consistency",
  "visualAppeal": "overall visual appeal"
}"""

VIDEO_PROMPT = """Analyze this video ad together with its copy. Return JSON only:
{
  "contentSummary": "summary of the video content and message",
  "pacing": "pacing and timing",
  "callToAction": "the call to action and its effectiveness",
  "visualElements": ["key visual elements and storytelling devices"],
  "audioAnalysis": "music, voiceover and sound design",
  "emotionalImpact": "expected emotional response",
  "targetAudience": "audience the ad is built for",
  "recommendations": ["specific improvements"]
}"""

_JSON_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class ProviderError(RuntimeError):
    """A failed AI provider call. `retryable` decides whether the processor tries again."""

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        model: str,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.model = model
        self.status_code = status_code
        if retryable is None:
            retryable = status_code is None or status_code in RETRYABLE_STATUS_CODES or status_code >= 500
        self.retryable = retryable


@dataclass
class ProviderResult:
    analysis: Dict[str, Any]
    provider: str
    model: str
    tokens_used: Optional[int] = None


def parse_json_output(text: Optional[str]) -> Dict[str, Any]:
    """Parse a model's JSON answer; prose answers are kept as the summary."""
    raw = (text or "").strip()
    cleaned = _JSON_FENCE.sub("", raw).strip()
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed
    return {
        "summary": raw,
        "rewrittenAdCopy": raw,
        "keyInsights": [],
        "competitorStrategy": "Unknown",
        "recommendations": ["Review content manually"],
    }


class AnalysisProvider:
    role: str = ROLE_STRATEGIC
    provider: str = PROVIDER_OPENAI

    def __init__(self, model: str) -> None:
        self.model = model

    def analyze(self, *, content: Dict[str, Any], content_type: str) -> ProviderResult:
        raise NotImplementedError

    def _error(self, message: str, *, status_code: Optional[int] = None, retryable: Optional[bool] = None) -> ProviderError:
        return ProviderError(
            message,
            provider=self.provider,
            model=self.model,
            status_code=status_code,
            retryable=retryable,
        )


class _OpenAIProvider(AnalysisProvider):
    provider = PROVIDER_OPENAI

    def __init__(self, model: str, *, client: Optional[OpenAI] = None) -> None:
        super().__init__(model)
        self._openai_client = client

    def _client(self) -> OpenAI:
        if self._openai_client is None:
            api_key = settings.OPENAI_API_KEY
            if not api_key:
                raise self._error("OPENAI_API_KEY not configured", retryable=False)
            # Retries belong to the delay processor so every attempt is rate-limited and logged.
            self._openai_client = OpenAI(
                api_key=api_key,
                timeout=settings.ANALYSIS_REQUEST_TIMEOUT_SECONDS,
                max_retries=0,
            )
        return self._openai_client

    def _complete(self, messages: List[Dict[str, Any]]) -> ProviderResult:
        try:
            response = self._client().chat.completions.create(
                model=self.model,
                messages=messages,
                response_format={"type": "json_object"},
                temperature=0.2,
            )
        except openai.APIStatusError as exc:
            raise self._error(f"OpenAI {self.model} error: {exc.message}", status_code=exc.status_code) from exc
        except openai.APIConnectionError as exc:
            raise self._error(f"OpenAI {self.model} connection error: {exc}") from exc

        if not response.choices:
            raise self._error(f"OpenAI {self.model} returned no choices")
        content = response.choices[0].message.content
        if not content:
            raise self._error(f"OpenAI {self.model} returned an empty message")
        usage = getattr(response, "usage", None)
        return ProviderResult(
            analysis=parse_json_output(content),
            provider=self.provider,
            model=self.model,
            tokens_used=getattr(usage, "total_tokens", None),
        )


class OpenAIStrategicSynthesizer(_OpenAIProvider):
    role = ROLE_STRATEGIC

    def analyze(self, *, content: Dict[str, Any], content_type: str) -> ProviderResult:
        ad_data = json.dumps(content, indent=2, default=str)
        prompt = f"{STRATEGIC_PROMPT}\n\nContent type: {content_type}\n\nAd data:\n{ad_data}"
        return self._complete([{"role": "user", "content": prompt}])


class OpenAIImageAnalyzer(_OpenAIProvider):
    role = ROLE_MEDIA

    def analyze(self, *, content: Dict[str, Any], content_type: str) -> ProviderResult:
        image_url = content.get("image_url")
        if not image_url:
            raise self._error("Image URL is missing", retryable=False)
        prompt = f"{IMAGE_PROMPT}\n\nAd copy:\n{content.get('text') or ''}"
        return self._complete(
            [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": image_url}},
                    ],
                }
            ]
        )


class GeminiVideoAnalyzer(AnalysisProvider):
    role = ROLE_MEDIA
    provider = PROVIDER_GEMINI

    def __init__(self, model: str, *, max_video_bytes: Optional[int] = None) -> None:
        super().__init__(model)
        self.max_video_bytes = max_video_bytes or settings.ANALYSIS_MAX_VIDEO_BYTES
        self._configured = False

    def _ensure_configured(self) -> None:
        if self._configured:
            return
        api_key = settings.GEMINI_API_KEY
        if not api_key:
            raise self._error("GEMINI_API_KEY not configured", retryable=False)
        genai.configure(api_key=api_key)
        self._configured = True

    def _download_video(self, url: str) -> bytes:
        try:
            with httpx.Client(follow_redirects=True, timeout=settings.ANALYSIS_REQUEST_TIMEOUT_SECONDS) as client:
                with client.stream("GET", url) as resp:
                    resp.raise_for_status()
                    chunks: List[bytes] = []
                    total = 0
                    for chunk in resp.iter_bytes(8192):
                        if not chunk:
                            continue
                        total += len(chunk)
                        if total > self.max_video_bytes:
                            raise self._error(
                                f"video_too_large: over {self.max_video_bytes} bytes",
                                status_code=413,
                            )
                        chunks.append(chunk)
                    logger.info("llm.video_downloaded", extra={"model": self.model, "bytes": total})
                    return b"".join(chunks)
        except httpx.HTTPStatusError as exc:
            raise self._error(
                f"Video download failed with HTTP {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise self._error(f"Video download failed: {exc}") from exc

    def analyze(self, *, content: Dict[str, Any], content_type: str) -> ProviderResult:
        video_url = content.get("video_url")
        if not video_url:
            raise self._error("No playable video URL", retryable=False)
        self._ensure_configured()
        video_bytes = self._download_video(video_url)

        model_name = self.model if self.model.startswith("models/") else f"models/{self.model}"
        model_client = genai.GenerativeModel(
            model_name=model_name,
            generation_config={"temperature": 0.2, "response_mime_type": "application/json"},
        )
        prompt = f"{VIDEO_PROMPT}\n\nAd copy:\n{content.get('text') or ''}"
        try:
            result = model_client.generate_content(
                [prompt, {"mime_type": "video/mp4", "data": video_bytes}],
                request_options={"timeout": settings.ANALYSIS_REQUEST_TIMEOUT_SECONDS},
            )
        except google_exceptions.GoogleAPICallError as exc:
            raise self._error(f"Gemini {self.model} error: {exc.message}", status_code=exc.code) from exc
        except google_exceptions.RetryError as exc:
            raise self._error(f"Gemini {self.model} retry error: {exc}") from exc

        try:
            raw_output = result.text
        except ValueError as exc:
            # Raised by the SDK when the candidate was blocked or has no text parts.
            raise self._error(f"Gemini {self.model} returned no usable candidate: {exc}", retryable=False) from exc
        if not raw_output:
            raise self._error(f"Gemini {self.model} returned no text")
        usage = getattr(result, "usage_metadata", None)
        return ProviderResult(
            analysis=parse_json_output(raw_output),
            provider=self.provider,
            model=self.model,
            tokens_used=getattr(usage, "total_token_count", None),
        )


def build_default_providers() -> Dict[ProviderRoute, AnalysisProvider]:
    """One provider per route of the classifier's routing table."""
    providers: Dict[ProviderRoute, AnalysisProvider] = {}
    for category in ContentCategoryEnum:
        for route in routes_for(category):
            if route in providers:
                continue
            if route.role == ROLE_STRATEGIC:
                providers[route] = OpenAIStrategicSynthesizer(route.model)
            elif route.provider == PROVIDER_GEMINI:
                providers[route] = GeminiVideoAnalyzer(route.model)
            else:
                providers[route] = OpenAIImageAnalyzer(route.model)
    return providers

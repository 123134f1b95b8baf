"""Content classification and the provider route each category takes."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from adintel.ads.types import AdItem
from adintel.config import settings
from adintel.db.enums import ContentCategoryEnum
from adintel.services.rate_limiter import PROVIDER_GEMINI, PROVIDER_OPENAI

# Meta serves playable ad video from video.* CDN hosts; anything else is a page or preview link.
PLAYABLE_VIDEO_PATTERN = re.compile(r"^https://video[.-]", re.IGNORECASE)
RESOLVABLE_IMAGE_PATTERN = re.compile(r"^https?://\S+$", re.IGNORECASE)

ROLE_MEDIA = "media"
ROLE_STRATEGIC = "strategic"


@dataclass(frozen=True)
class ProviderRoute:
    role: str
    provider: str
    model: str


def is_playable_video(url: Optional[str]) -> bool:
    return bool(url) and bool(PLAYABLE_VIDEO_PATTERN.match(url.strip()))


def is_resolvable_image(url: Optional[str]) -> bool:
    return bool(url) and bool(RESOLVABLE_IMAGE_PATTERN.match(url.strip()))


def playable_video_urls(item: AdItem) -> Tuple[str, ...]:
    return tuple(url for url in item.video_urls if is_playable_video(url))


def resolvable_image_urls(item: AdItem) -> Tuple[str, ...]:
    return tuple(url for url in item.image_urls if is_resolvable_image(url))


def classify(item: AdItem) -> ContentCategoryEnum:
    has_text = bool(item.text and item.text.strip())
    if not has_text:
        return ContentCategoryEnum.text_only
    if playable_video_urls(item):
        return ContentCategoryEnum.text_with_video
    if resolvable_image_urls(item):
        return ContentCategoryEnum.text_with_image
    return ContentCategoryEnum.text_only


def _route_table() -> Dict[ContentCategoryEnum, Tuple[ProviderRoute, ...]]:
    strategic = ProviderRoute(ROLE_STRATEGIC, PROVIDER_OPENAI, settings.ANALYSIS_STRATEGIC_MODEL)
    return {
        ContentCategoryEnum.text_only: (strategic,),
        ContentCategoryEnum.text_with_image: (
            ProviderRoute(ROLE_MEDIA, PROVIDER_OPENAI, settings.ANALYSIS_IMAGE_MODEL),
            strategic,
        ),
        ContentCategoryEnum.text_with_video: (
            ProviderRoute(ROLE_MEDIA, PROVIDER_GEMINI, settings.ANALYSIS_VIDEO_MODEL),
            strategic,
        ),
    }


ROUTES = _route_table()


def routes_for(category: ContentCategoryEnum) -> Tuple[ProviderRoute, ...]:
    """Calls an item of `category` needs, media analysis first."""
    return ROUTES[ContentCategoryEnum(category)]

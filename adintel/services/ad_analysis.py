"""Building provider inputs for an ad and assembling the stored analysis from provider outputs."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from adintel.ads.classifier import (
    ROLE_MEDIA,
    ProviderRoute,
    playable_video_urls,
    resolvable_image_urls,
)
from adintel.ads.types import AdItem
from adintel.db.enums import ContentCategoryEnum


def has_analyzable_content(item: AdItem) -> bool:
    return bool((item.text or "").strip() or resolvable_image_urls(item) or playable_video_urls(item))


def build_call_content(
    item: AdItem,
    category: ContentCategoryEnum,
    route: ProviderRoute,
    media_analysis: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Input for one provider call; the strategic call sees the media step's output."""
    base: Dict[str, Any] = {
        "ad_archive_id": item.ad_archive_id,
        "text": item.text,
        "title": item.title,
        "cta_text": item.cta_text,
        "page_name": item.page_name,
    }
    if route.role == ROLE_MEDIA:
        if category == ContentCategoryEnum.text_with_video:
            base["video_url"] = playable_video_urls(item)[0]
        else:
            base["image_url"] = resolvable_image_urls(item)[0]
        return base

    if category == ContentCategoryEnum.text_with_image:
        base["image_url"] = resolvable_image_urls(item)[0]
        base["image_analysis"] = media_analysis
    elif category == ContentCategoryEnum.text_with_video:
        base["video_url"] = playable_video_urls(item)[0]
        base["video_analysis"] = media_analysis
    return base


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [str(v) for v in value if v not in (None, "")]
    if isinstance(value, str):
        return [value] if value.strip() else []
    return [str(value)]


def combine_analysis(
    category: ContentCategoryEnum,
    media_analysis: Optional[Dict[str, Any]],
    strategic_analysis: Dict[str, Any],
) -> Dict[str, Any]:
    media = media_analysis or {}
    recommendations: List[str] = []
    for rec in (
        _as_list(strategic_analysis.get("recommendations"))
        + _as_list(media.get("recommendations"))
        + _as_list(media.get("designRecommendations"))
    ):
        if rec not in recommendations:
            recommendations.append(rec)

    combined: Dict[str, Any] = {
        "contentType": ContentCategoryEnum(category).value,
        "overallStrategy": strategic_analysis.get("competitorStrategy"),
        "summary": strategic_analysis.get("summary"),
        "recommendations": recommendations,
    }
    if category == ContentCategoryEnum.text_with_image:
        combined["visualAppeal"] = media.get("visualAppeal")
        combined["brandConsistency"] = media.get("brandConsistency")
    elif category == ContentCategoryEnum.text_with_video:
        combined["videoSummary"] = media.get("contentSummary")
        combined["targetAudience"] = media.get("targetAudience")
        combined["emotionalImpact"] = media.get("emotionalImpact")
    return combined


def extract_summary(analysis: Dict[str, Any]) -> Optional[str]:
    strategic = analysis.get("strategic_analysis") or {}
    return strategic.get("summary") or analysis.get("summary") or None


def extract_rewritten_copy(analysis: Dict[str, Any]) -> Optional[str]:
    strategic = analysis.get("strategic_analysis") or {}
    return strategic.get("rewrittenAdCopy") or analysis.get("rewrittenAdCopy") or None


def extract_key_insights(analysis: Dict[str, Any]) -> List[str]:
    strategic = analysis.get("strategic_analysis") or {}
    return _as_list(strategic.get("keyInsights") or analysis.get("keyInsights"))


def extract_competitor_strategy(analysis: Dict[str, Any]) -> Optional[str]:
    strategic = analysis.get("strategic_analysis") or {}
    return strategic.get("competitorStrategy") or analysis.get("competitorStrategy") or None


def extract_recommendations(analysis: Dict[str, Any]) -> List[str]:
    strategic = analysis.get("strategic_analysis") or {}
    return _as_list(strategic.get("recommendations") or analysis.get("recommendations"))

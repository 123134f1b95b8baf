from __future__ import annotations

import re
import zlib
from typing import Any, Dict, List

from adintel.ads.types import AdItem
from adintel.db.enums import ContentCategoryEnum

FALLBACK_REASON = "AI providers rate limited - using fallback analysis"
FALLBACK_MODEL = "local:fallback"

BASIC_INSIGHTS = (
    "Ad uses standard marketing language",
    "Target audience appears to be general consumers",
    "Call-to-action is present and clear",
    "Ad follows common Facebook ad patterns",
)

BASE_RECOMMENDATIONS = (
    "Test different headlines",
    "A/B test call-to-action buttons",
    "Monitor performance metrics",
)


class FallbackAnalyzer:
    """Pattern-based analysis used instead of a provider call when rate limits block one.

    Output has the same shape as a real analysis so downstream code does not
    branch on it; `fallback` is always True. Deterministic for a given item.
    """

    def analyze(self, item: AdItem, category: ContentCategoryEnum) -> Dict[str, Any]:
        category = ContentCategoryEnum(category)
        return {
            "media_analysis": self._media_analysis(item, category),
            "strategic_analysis": self._strategic_analysis(item, category),
            "combined_analysis": self._combined_analysis(category),
            "fallback": True,
            "reason": FALLBACK_REASON,
        }

    def _media_analysis(self, item: AdItem, category: ContentCategoryEnum) -> Dict[str, Any]:
        if category == ContentCategoryEnum.text_with_image:
            return {
                "visualElements": ["Image present", "Text overlay likely", "Standard ad format"],
                "colorPsychology": "Standard color scheme used",
                "designRecommendations": ["Consider A/B testing different images", "Optimize for mobile viewing"],
                "brandConsistency": "Appears consistent with standard practices",
                "visualAppeal": "Standard visual appeal",
            }
        if category == ContentCategoryEnum.text_with_video:
            return {
                "contentSummary": "Video ad with accompanying text",
                "pacing": "Standard video pacing",
                "callToAction": item.cta_text or "Standard CTA present",
                "visualElements": ["Video content", "Text overlay", "Standard format"],
                "audioAnalysis": "Audio elements present",
                "emotionalImpact": "Standard emotional appeal",
                "targetAudience": "General audience",
                "recommendations": ["Test different video lengths", "Optimize for sound-off viewing"],
            }
        return {
            "textAnalysis": "Text-based ad analysis",
            "characterCount": len(item.text or ""),
            "wordCount": len((item.text or "").split()),
            "hasCTA": bool(item.cta_text),
            "hasTitle": bool(item.title),
            "sentiment": "Neutral",
        }

    def _strategic_analysis(self, item: AdItem, category: ContentCategoryEnum) -> Dict[str, Any]:
        text = item.text or ""
        parts = [f"Basic analysis of {category.value} ad from {item.page_name or 'unknown advertiser'}."]
        if text:
            parts.append("Contains text content.")
        if item.cta_text:
            parts.append("Includes call-to-action.")
        return {
            "summary": " ".join(parts),
            "rewrittenAdCopy": self.rewrite_copy(item),
            "keyInsights": self.key_insights(text, category),
            "competitorStrategy": f"Standard {category.value} advertising approach",
            "recommendations": self.recommendations(category),
        }

    def _combined_analysis(self, category: ContentCategoryEnum) -> Dict[str, Any]:
        return {
            "overallStrategy": f"Basic {category.value} advertising strategy",
            "contentAlignment": "Content appears aligned with standard practices",
            "competitiveAdvantage": "Standard competitive positioning",
            "recommendations": "Consider A/B testing different approaches",
        }

    def rewrite_copy(self, item: AdItem) -> str:
        text = item.text or ""
        if not text:
            return "No text content available for rewriting"
        variations = [
            text,
            text.replace("!", "."),
            re.sub(r"\byou\b", "your audience", text, flags=re.IGNORECASE),
            re.sub(r"\bget\b", "discover", text, flags=re.IGNORECASE),
        ]
        # Stable choice per ad so replays and retries produce identical rows.
        seed = zlib.crc32((item.ad_archive_id or text).encode("utf-8"))
        return variations[seed % len(variations)]

    def key_insights(self, text: str, category: ContentCategoryEnum) -> List[str]:
        insights = list(BASIC_INSIGHTS)
        if len(text) > 100:
            insights.append("Ad uses detailed messaging")
        if category == ContentCategoryEnum.text_with_image:
            insights.append("Visual content enhances message")
        if category == ContentCategoryEnum.text_with_video:
            insights.append("Video format for higher engagement")
        return insights

    def recommendations(self, category: ContentCategoryEnum) -> List[str]:
        recs = list(BASE_RECOMMENDATIONS)
        if category == ContentCategoryEnum.text_with_image:
            recs.extend(["Test different images", "Optimize for mobile"])
        elif category == ContentCategoryEnum.text_with_video:
            recs.extend(["Test video lengths", "Add captions for accessibility"])
        return recs

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from adintel.ads.types import AdItem

logger = logging.getLogger(__name__)


def _first_str(*values: Any) -> Optional[str]:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _append_unique(target: List[str], value: Optional[str]) -> None:
    if value and value not in target:
        target.append(value)


def normalize_ad_item(payload: Dict[str, Any]) -> Optional[AdItem]:
    """
    Map one Meta Ad Library scraper row to an AdItem.

    Rows that carry an error marker instead of an ad are dropped.
    """
    if not isinstance(payload, dict) or payload.get("error"):
        return None

    ad_archive_id = _first_str(
        payload.get("ad_archive_id"),
        payload.get("adArchiveId"),
        payload.get("ad_snapshot_id"),
        str(payload["id"]) if payload.get("id") is not None else None,
    )
    snapshot: Dict[str, Any] = payload.get("snapshot") or {}
    body = snapshot.get("body") or {}
    body_text = body.get("text") if isinstance(body, dict) else body
    text = _first_str(body_text, payload.get("body"), payload.get("bodyText"), payload.get("text")) or ""

    image_urls: List[str] = []
    video_urls: List[str] = []
    for img in snapshot.get("images") or []:
        if isinstance(img, dict):
            _append_unique(
                image_urls,
                _first_str(img.get("original_image_url"), img.get("resized_image_url"), img.get("url")),
            )
        elif isinstance(img, str):
            _append_unique(image_urls, img.strip() or None)
    for vid in snapshot.get("videos") or []:
        if not isinstance(vid, dict):
            continue
        _append_unique(
            video_urls,
            _first_str(vid.get("video_url"), vid.get("video_hd_url"), vid.get("video_sd_url"), vid.get("url")),
        )
    for card in snapshot.get("cards") or []:
        if not isinstance(card, dict):
            continue
        _append_unique(video_urls, _first_str(card.get("video_hd_url"), card.get("video_sd_url")))
        _append_unique(image_urls, _first_str(card.get("original_image_url"), card.get("resized_image_url")))

    return AdItem(
        ad_archive_id=ad_archive_id,
        text=text,
        image_urls=tuple(image_urls),
        video_urls=tuple(video_urls),
        page_name=_first_str(snapshot.get("page_name"), payload.get("page_name"), payload.get("pageName")),
        cta_text=_first_str(snapshot.get("cta_text"), payload.get("ctaText"), payload.get("cta_text")),
        title=_first_str(snapshot.get("title"), payload.get("title"), payload.get("headline")),
        link_url=_first_str(snapshot.get("link_url"), payload.get("linkUrl"), payload.get("url")),
    )


def normalize_ad_items(payloads: Iterable[Dict[str, Any]]) -> List[AdItem]:
    items: List[AdItem] = []
    dropped = 0
    for payload in payloads or []:
        item = normalize_ad_item(payload)
        if item is None:
            dropped += 1
            continue
        items.append(item)
    if dropped:
        logger.info("ads.normalize_dropped_rows", extra={"dropped": dropped, "kept": len(items)})
    return items

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class AdItem:
    """One scraped advertisement, normalized once from the provider payload."""

    ad_archive_id: Optional[str]
    text: str = ""
    image_urls: tuple[str, ...] = ()
    video_urls: tuple[str, ...] = ()
    page_name: Optional[str] = None
    cta_text: Optional[str] = None
    title: Optional[str] = None
    link_url: Optional[str] = None

    def to_content(self) -> Dict[str, Any]:
        data = asdict(self)
        data["image_urls"] = list(self.image_urls)
        data["video_urls"] = list(self.video_urls)
        return data


@dataclass
class ScrapeRequest:
    keyword: str
    max_items: int
    region: str = "US"
    active_status: str = "active"


@dataclass
class ScrapeResult:
    items: List[Dict[str, Any]] = field(default_factory=list)
    run_id: Optional[str] = None

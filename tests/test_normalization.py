from adintel.ads.normalization import normalize_ad_item, normalize_ad_items
from tests.conftest import ad_payload


def test_snapshot_payload_is_normalized():
    payload = ad_payload(
        "123",
        "  Fresh drops every week  ",
        images=["https://scontent.xx.fbcdn.net/a.jpg", "https://scontent.xx.fbcdn.net/a.jpg"],
        videos=["https://video.xx.fbcdn.net/v.mp4"],
    )

    item = normalize_ad_item(payload)

    assert item.ad_archive_id == "123"
    assert item.text == "Fresh drops every week"
    assert item.image_urls == ("https://scontent.xx.fbcdn.net/a.jpg",)
    assert item.video_urls == ("https://video.xx.fbcdn.net/v.mp4",)
    assert (item.page_name, item.cta_text, item.title) == ("Acme", "Shop now", "Spring sale")


def test_flat_payload_and_card_media():
    payload = {
        "adArchiveId": "456",
        "bodyText": "Summer is here",
        "pageName": "Beach Co",
        "snapshot": {
            "cards": [
                {"original_image_url": "https://scontent.xx.fbcdn.net/card.jpg"},
                {"video_sd_url": "https://video.xx.fbcdn.net/card.mp4"},
            ]
        },
    }

    item = normalize_ad_item(payload)

    assert item.ad_archive_id == "456"
    assert item.text == "Summer is here"
    assert item.page_name == "Beach Co"
    assert item.image_urls == ("https://scontent.xx.fbcdn.net/card.jpg",)
    assert item.video_urls == ("https://video.xx.fbcdn.net/card.mp4",)


def test_numeric_id_and_missing_text():
    item = normalize_ad_item({"id": 789})
    assert item.ad_archive_id == "789"
    assert item.text == ""
    assert item.image_urls == ()


def test_error_rows_and_non_dicts_are_dropped():
    items = normalize_ad_items([{"error": "no_results"}, "garbage", ad_payload("ok")])
    assert [item.ad_archive_id for item in items] == ["ok"]


def test_to_content_uses_lists():
    content = normalize_ad_item(ad_payload("1", images=["https://scontent.xx.fbcdn.net/a.jpg"])).to_content()
    assert content["image_urls"] == ["https://scontent.xx.fbcdn.net/a.jpg"]
    assert content["video_urls"] == []

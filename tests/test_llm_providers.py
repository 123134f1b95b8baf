from types import SimpleNamespace

import httpx
import openai
import pytest

from adintel.ads.classifier import ROUTES
from adintel.db.enums import ContentCategoryEnum
from adintel.llm.providers import (
    GeminiVideoAnalyzer,
    OpenAIImageAnalyzer,
    OpenAIStrategicSynthesizer,
    ProviderError,
    build_default_providers,
    parse_json_output,
)


class _FakeCompletions:
    def __init__(self, outcome):
        self.outcome = outcome
        self.kwargs = None

    def create(self, **kwargs):
        self.kwargs = kwargs
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def _fake_openai(outcome):
    completions = _FakeCompletions(outcome)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


def _completion(content, total_tokens=321):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(total_tokens=total_tokens),
    )


def test_strategic_synthesizer_parses_json_and_usage():
    client, completions = _fake_openai(_completion('{"summary": "Discount-led", "keyInsights": ["Urgency"]}'))
    provider = OpenAIStrategicSynthesizer("gpt-4o-mini", client=client)

    result = provider.analyze(content={"ad_archive_id": "ad-1", "text": "Sale"}, content_type="text_only")

    assert result.analysis == {"summary": "Discount-led", "keyInsights": ["Urgency"]}
    assert (result.provider, result.model, result.tokens_used) == ("openai", "gpt-4o-mini", 321)
    assert completions.kwargs["model"] == "gpt-4o-mini"
    assert completions.kwargs["response_format"] == {"type": "json_object"}
    assert '"ad_archive_id": "ad-1"' in completions.kwargs["messages"][0]["content"]


def test_image_analyzer_sends_image_url():
    client, completions = _fake_openai(_completion('{"visualAppeal": "High"}'))
    provider = OpenAIImageAnalyzer("gpt-4o", client=client)

    provider.analyze(content={"image_url": "https://scontent.xx.fbcdn.net/a.jpg", "text": "Look"}, content_type="text_with_image")

    parts = completions.kwargs["messages"][0]["content"]
    assert parts[1] == {"type": "image_url", "image_url": {"url": "https://scontent.xx.fbcdn.net/a.jpg"}}


def test_image_analyzer_without_url_is_not_retryable():
    client, completions = _fake_openai(_completion("{}"))
    with pytest.raises(ProviderError) as excinfo:
        OpenAIImageAnalyzer("gpt-4o", client=client).analyze(content={}, content_type="text_with_image")
    assert excinfo.value.retryable is False
    assert completions.kwargs is None


@pytest.mark.parametrize("status_code, retryable", [(429, True), (503, True), (400, False), (401, False)])
def test_openai_status_errors_map_to_provider_errors(status_code, retryable):
    response = httpx.Response(status_code, request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))
    error = openai.APIStatusError("upstream said no", response=response, body=None)
    client, _ = _fake_openai(error)

    with pytest.raises(ProviderError) as excinfo:
        OpenAIStrategicSynthesizer("gpt-4o-mini", client=client).analyze(content={}, content_type="text_only")

    assert excinfo.value.status_code == status_code
    assert excinfo.value.retryable is retryable
    assert excinfo.value.provider == "openai"


def test_empty_completion_is_retryable():
    client, _ = _fake_openai(_completion(""))
    with pytest.raises(ProviderError) as excinfo:
        OpenAIStrategicSynthesizer("gpt-4o-mini", client=client).analyze(content={}, content_type="text_only")
    assert excinfo.value.retryable is True


def test_missing_api_key_is_not_retryable(monkeypatch):
    from adintel.config import settings

    monkeypatch.setattr(settings, "OPENAI_API_KEY", None)
    with pytest.raises(ProviderError) as excinfo:
        OpenAIStrategicSynthesizer("gpt-4o-mini").analyze(content={}, content_type="text_only")
    assert excinfo.value.retryable is False


def test_video_analyzer_requires_video_url():
    with pytest.raises(ProviderError) as excinfo:
        GeminiVideoAnalyzer("gemini-2.5-flash").analyze(content={}, content_type="text_with_video")
    assert excinfo.value.provider == "gemini"
    assert excinfo.value.retryable is False


def test_parse_json_output_handles_fences_and_prose():
    assert parse_json_output('```json\n{"summary": "ok"}\n```') == {"summary": "ok"}
    prose = parse_json_output("This ad leans on urgency.")
    assert prose["summary"] == "This ad leans on urgency."
    assert prose["keyInsights"] == []


def test_default_providers_cover_every_route():
    providers = build_default_providers()

    assert isinstance(providers[ROUTES[ContentCategoryEnum.text_only][0]], OpenAIStrategicSynthesizer)
    assert isinstance(providers[ROUTES[ContentCategoryEnum.text_with_image][0]], OpenAIImageAnalyzer)
    assert isinstance(providers[ROUTES[ContentCategoryEnum.text_with_video][0]], GeminiVideoAnalyzer)
    assert len(providers) == 3

import json

import httpx
import pytest

from pond.errors import ValidationIssue
from pond.models import Action, Entity, Tag
from pond.services.extraction import OllamaExtractionService, parse_json_array

BASE_URL = "http://ollama.test"


def _service(handler, **kwargs) -> tuple[OllamaExtractionService, list[float]]:
    sleeps: list[float] = []
    client = httpx.Client(transport=httpx.MockTransport(handler))
    options = {"max_retries": 1, "backoff_seconds": 0.5, "jitter_seconds": 0, "model": "qwen-test"}
    options.update(kwargs)
    service = OllamaExtractionService(base_url=BASE_URL, client=client, sleep=sleeps.append, **options)
    return service, sleeps


def _answer(text: str):
    return lambda request: httpx.Response(200, json={"response": text, "done": True})


def test_entities_request_and_parsing():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((str(request.url), json.loads(request.content)))
        answer = 'Sure! [{"text": "Pond", "type": "PRODUCT"}, {"text": "PostgreSQL", "type": "TECHNOLOGY"}]'
        return httpx.Response(200, json={"response": answer})

    service, _ = _service(handler)
    entities = service.extract_entities("Pond keeps memories in PostgreSQL")

    assert entities == [Entity("Pond", "PRODUCT"), Entity("PostgreSQL", "TECHNOLOGY")]
    url, body = seen[0]
    assert url == f"{BASE_URL}/api/generate"
    assert body["model"] == "qwen-test"
    assert body["stream"] is False
    assert body["options"] == {"temperature": 0.1}
    assert '"Pond keeps memories in PostgreSQL"' in body["prompt"]
    assert "TECHNOLOGY" in body["prompt"]


def test_actions_and_tags_are_deduplicated_by_slug():
    service, _ = _service(_answer('["Store memory", "store  memory", "search", ""]'))
    actions = service.extract_actions("Store the memory and search it later")
    assert [action.action for action in actions] == ["Store memory", "search"]
    assert all(isinstance(action, Action) for action in actions)

    service, _ = _service(_answer('```json\n["Python", "python", "Vector Search"]\n```'))
    tags = service.extract_tags("Python vector search")
    assert [tag.slug for tag in tags] == ["python", "vector-search"]
    assert all(isinstance(tag, Tag) for tag in tags)


def test_malformed_items_are_skipped():
    answer = '[{"text": "Pond"}, "loose string", {"text": "Ollama", "type": "TECHNOLOGY"}]'
    service, _ = _service(_answer(answer))

    assert service.extract_entities("Pond talks to Ollama") == [Entity("Ollama", "TECHNOLOGY")]


def test_unparsable_answer_yields_nothing():
    service, _ = _service(_answer("I could not find any tags."))
    assert service.extract_tags("nothing to see") == []


def test_unavailable_provider_degrades_to_empty_after_retries():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    service, sleeps = _service(handler)
    assert service.extract_actions("retry then give up") == []
    assert len(calls) == 2
    assert sleeps == [0.5]


def test_malformed_payload_degrades_to_empty():
    service, _ = _service(lambda request: httpx.Response(200, json={"text": "no response key"}))
    assert service.extract_entities("odd payload") == []


def test_blank_text_is_rejected_before_any_request():
    calls = []
    service, _ = _service(lambda request: calls.append(request) or httpx.Response(200))
    with pytest.raises(ValidationIssue):
        service.extract_tags("   ")
    assert calls == []


def test_parse_json_array_skips_objects_and_broken_brackets():
    assert parse_json_array('[broken {"a": 1} ["ok"]') == ["ok"]
    assert parse_json_array('{"tags": 1}') == []
    assert parse_json_array("[]") == []

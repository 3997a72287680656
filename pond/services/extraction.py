"""
NLP extraction of tags, entities and actions.

``ExtractionService`` is the seam the memory service uses to enrich a draft
memory; ``OllamaExtractionService`` prompts a local instruct model through
``/api/generate`` and parses the JSON array it answers with. Extraction is
best effort: an unreachable provider or an unparsable answer yields an empty
list and a warning, never a failed memory.
"""

from __future__ import annotations

import json
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import httpx

import pond.config as config
from pond.errors import ExtractionProviderError, ValidationIssue
from pond.models import Action, Entity, Tag
from pond.services.ollama import OllamaHttpService
from pond.validators import validate_required_text

logger = config.logger.getChild("extraction")

ENTITY_TYPES = ("PERSON", "ORGANIZATION", "LOCATION", "TECHNOLOGY", "CONCEPT", "DATE", "PRODUCT")

ENTITY_PROMPT = (
    "List the named entities in the text below. Answer with a JSON array only, "
    'each item an object with "text" and "type" keys.\n\n'
    f"Allowed types: {', '.join(ENTITY_TYPES)}\n\n"
    'Text: "{text}"\n\n'
    'Answer format: [{{"text": "entity name", "type": "ENTITY_TYPE"}}]'
)

ACTION_PROMPT = (
    "List the actions in the text below: verbs, intentions, tasks and operations. "
    "Answer with a JSON array of strings only.\n\n"
    'Text: "{text}"\n\n'
    'Answer format: ["action one", "action two"]'
)

TAG_PROMPT = (
    "List short tags for the text below: key concepts, topics, themes and technologies. "
    "Answer with a JSON array of strings only.\n\n"
    'Text: "{text}"\n\n'
    'Answer format: ["tag-one", "tag-two"]'
)


class ExtractionService(ABC):
    """Derives memory children from free text."""

    @abstractmethod
    def extract_entities(self, text: str) -> list[Entity]:
        ...

    @abstractmethod
    def extract_actions(self, text: str) -> list[Action]:
        ...

    @abstractmethod
    def extract_tags(self, text: str) -> list[Tag]:
        ...


def parse_json_array(answer: str) -> list:
    """First JSON array in a model answer; models often wrap it in prose or fences."""
    decoder = json.JSONDecoder()
    start = answer.find("[")
    while start != -1:
        try:
            value, _ = decoder.raw_decode(answer, start)
        except ValueError:
            start = answer.find("[", start + 1)
            continue
        if isinstance(value, list):
            return value
        start = answer.find("[", start + 1)
    return []


def _build_all(items: list, build: Callable[[Any], Any], label: str) -> list:
    built = []
    seen = set()
    for item in items:
        try:
            value = build(item)
        except (ValidationIssue, TypeError, AttributeError):
            logger.debug(f"Skipping malformed {label}: {item!r}")
            continue
        if value is None:
            continue
        key = getattr(value, "slug", value)
        if key in seen:
            continue
        seen.add(key)
        built.append(value)
    return built


def _entity(item: Any) -> Entity:
    return Entity(text=item.get("text"), type=item.get("type"))


def _action(item: Any) -> Optional[Action]:
    action = Action(item)
    return action if action.slug else None


def _tag(item: Any) -> Optional[Tag]:
    tag = Tag(item)
    return tag if tag.slug else None


class OllamaExtractionService(OllamaHttpService, ExtractionService):
    provider_error = ExtractionProviderError
    provider_name = "extraction provider"

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        temperature: float = 0.1,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        jitter_seconds: Optional[float] = None,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.model = model or config.OLLAMA_NLP_MODEL
        self.temperature = temperature
        super().__init__(
            base_url=base_url,
            timeout_seconds=timeout_seconds,
            max_retries=max_retries,
            backoff_seconds=backoff_seconds,
            jitter_seconds=jitter_seconds,
            client=client,
            sleep=sleep,
        )

    def extract_entities(self, text: str) -> list[Entity]:
        items = self._ask(ENTITY_PROMPT, text, "entities")
        return _build_all(items, _entity, "entity")

    def extract_actions(self, text: str) -> list[Action]:
        items = self._ask(ACTION_PROMPT, text, "actions")
        return _build_all(items, _action, "action")

    def extract_tags(self, text: str) -> list[Tag]:
        items = self._ask(TAG_PROMPT, text, "tags")
        return _build_all(items, _tag, "tag")

    def _ask(self, template: str, text: str, label: str) -> list:
        validate_required_text(text, "text", config.MAX_CONTENT_LENGTH)
        payload = {
            "model": self.model,
            "prompt": template.format(text=text),
            "stream": False,
            "options": {"temperature": self.temperature},
        }
        try:
            response = self._post_with_retry("/api/generate", payload)
            answer = response.json()["response"]
        except ExtractionProviderError as exc:
            logger.warning(f"Extracting {label} failed: {exc}")
            return []
        except (ValueError, KeyError, TypeError):
            logger.warning(f"Extracting {label} failed: malformed response from Ollama")
            return []

        if not isinstance(answer, str):
            logger.warning(f"Extracting {label} failed: malformed response from Ollama")
            return []
        items = parse_json_array(answer)
        logger.debug(f"Extracted {len(items)} {label} (model={self.model})")
        return items

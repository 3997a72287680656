"""
Builds draft memories ready for the repository.
"""

from __future__ import annotations

from typing import Optional

import pond.config as config
from pond.models import Memory, Source, SourceType
from pond.services.embeddings import EmbeddingService
from pond.services.extraction import ExtractionService
from pond.validators import validate_required_text

logger = config.logger.getChild("memory_service")

USER_INPUT_CONTEXT = "User input"


class MemoryService:
    def __init__(
        self,
        embedding_service: EmbeddingService,
        extraction_service: Optional[ExtractionService] = None,
    ):
        self.embedding_service = embedding_service
        self.extraction_service = extraction_service

    def create_memory(
        self,
        content: str,
        source: Optional[Source] = None,
        skip_embedding: bool = False,
        skip_extraction: bool = False,
    ) -> Memory:
        validate_required_text(content, "content", config.MAX_CONTENT_LENGTH)
        memory = Memory(content=content)
        if source is not None:
            memory = memory.with_source(source)
        if not skip_embedding:
            memory = memory.with_embedding(self.embedding_service.generate_embedding(content))
        if self.extraction_service is not None and not skip_extraction:
            memory = self._enrich(memory)
        logger.debug(
            f"Created draft memory {memory.content_hash[:12]} "
            f"(embedded={memory.embedding is not None}, tags={len(memory.tags)}, "
            f"entities={len(memory.entities)}, actions={len(memory.actions)})"
        )
        return memory

    def _enrich(self, memory: Memory) -> Memory:
        extractor = self.extraction_service
        for tag in extractor.extract_tags(memory.content):
            memory = memory.add_tag(tag)
        for entity in extractor.extract_entities(memory.content):
            memory = memory.add_entity(entity)
        for action in extractor.extract_actions(memory.content):
            memory = memory.add_action(action)
        return memory

    def create_user_memory(self, content: str) -> Memory:
        return self.create_memory(content, source=Source(type=SourceType.MANUAL, context=USER_INPUT_CONTEXT))

    def create_agent_memory(self, content: str, context: str) -> Memory:
        return self.create_memory(content, source=Source(type=SourceType.EXTERNAL_AGENT, context=context))

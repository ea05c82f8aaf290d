"""
Extraction pipeline: runs the rule-based and model-based extractors over a text
unit, then merges and validates what they produced.
"""

from typing import Any, Dict, Iterable, List, Optional, Union

from ..models.core import ChatMessage, ConsciousMemory, ExtractionResult
from ..utils.logging_config import get_logger
from .rule_extraction import extract_file_paths, extract_from_conscious_memory, extract_tool_invocations

logger = get_logger(__name__)

TextUnit = Union[str, ChatMessage, ConsciousMemory, List[Dict[str, Any]]]


def merge_extractions(results: Iterable[ExtractionResult]) -> ExtractionResult:
    """Union several extraction results.

    Results are visited in the order given. The first entity seen for an id is
    kept as-is, later ones are ignored; relationships are deduplicated on
    (source, type, target) the same way.
    """
    merged = ExtractionResult()
    entity_ids = set()
    relationship_keys = set()

    for result in results:
        for entity in result.entities:
            if entity.id in entity_ids:
                continue
            entity_ids.add(entity.id)
            merged.entities.append(entity)
        for rel in result.relationships:
            if rel.key in relationship_keys:
                continue
            relationship_keys.add(rel.key)
            merged.relationships.append(rel)

    return merged


def validate_extraction(result: ExtractionResult) -> ExtractionResult:
    """Drop malformed entities and relationships that don't resolve.

    An entity needs an id, a label and a properties dict. A relationship needs a
    type and both endpoints among the surviving entities.
    """
    entities = [e for e in result.entities if e.id and e.label and isinstance(e.properties, dict)]
    surviving = {e.id for e in entities}
    relationships = [
        r for r in result.relationships if r.type and r.source_id in surviving and r.target_id in surviving
    ]

    dropped_entities = len(result.entities) - len(entities)
    dropped_relationships = len(result.relationships) - len(relationships)
    if dropped_entities or dropped_relationships:
        logger.warning(f'Validation dropped {dropped_entities} entities and {dropped_relationships} relationships')

    return ExtractionResult(entities=entities, relationships=relationships)


class ExtractionPipeline:
    """Turn chat messages, saved notes, free text and tool-call logs into graph candidates."""

    def __init__(self, model_extractor=None):
        """
        Args:
            model_extractor: Optional ModelExtractor; without it only the rule-based extractors run
        """
        self.model_extractor = model_extractor

    def extract(self, unit: TextUnit) -> ExtractionResult:
        """
        Extract entities and relationships from one text unit.

        Args:
            unit: Free text, a ChatMessage, a ConsciousMemory, or a list of tool-call dicts

        Returns:
            Merged (not yet validated) extraction result
        """
        if isinstance(unit, ConsciousMemory):
            return self.extract_conscious_memory(unit)
        if isinstance(unit, ChatMessage):
            return self.extract_chat_message(unit)
        if isinstance(unit, str):
            return self.extract_text(unit)
        if isinstance(unit, (list, tuple, dict)):
            return extract_tool_invocations(unit)
        raise TypeError(f'Unsupported text unit: {type(unit).__name__}')

    def extract_text(self, text: str, context: Optional[str] = None) -> ExtractionResult:
        return merge_extractions([extract_file_paths(text), self._model(text, context or 'text')])

    def extract_chat_message(self, message: ChatMessage) -> ExtractionResult:
        return merge_extractions([
            self._model(message.content, f'{message.role} chat message'),
            extract_tool_invocations(message.tool_invocations),
            extract_file_paths(message.content),
        ])

    def extract_conscious_memory(self, memory: ConsciousMemory) -> ExtractionResult:
        return merge_extractions([extract_from_conscious_memory(memory), self._model(memory.content, 'saved note')])

    def _model(self, text: str, context: str) -> ExtractionResult:
        if self.model_extractor is None:
            return ExtractionResult()
        try:
            return self.model_extractor.extract(text, context)
        except Exception as e:
            logger.warning(f'Model extractor failed, continuing with rule-based results: {e}')
            return ExtractionResult()

"""
Model-based entity and relationship extraction through Amazon Bedrock.
"""

import json
import re
from typing import Any, Dict, List, Optional

from ..models.core import Entity, ExtractionResult, Relationship
from ..utils.bedrock_llm import BedrockLLMError
from ..utils.json_utils import parse_json_response
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

MAX_INPUT_CHARS = 12000

SYSTEM_PROMPT = """
You are an expert knowledge graph extraction system. Extract entities and the relationships between them from the text.

Extract entities that are:
- People (names, roles)
- Organizations (companies, teams, institutions)
- Projects, products and technologies
- Concepts and topics
- Files, documents and other artifacts that are explicitly named

Rules:
- Entity ids are short stable identifiers made of the label and name, for example "Person_JaneDoe" or "Technology_Python".
- Labels are single PascalCase words such as Person, Organization, Project, Technology, Concept, Document.
- Relationship types are UPPER_SNAKE_CASE verbs such as WORKS_ON, USES, MEMBER_OF, MENTIONS.
- Every relationship must reference ids of entities in your entities list.
- Only extract what is explicitly stated. Do not infer or assume.

Return a JSON object with this exact format:
```json
{
  "entities": [
    {"id": "Person_JaneDoe", "label": "Person", "properties": {"name": "Jane Doe"}}
  ],
  "relationships": [
    {"sourceEntityId": "Person_JaneDoe", "targetEntityId": "Project_Atlas", "type": "WORKS_ON", "properties": {}}
  ]
}
```

Return {"entities": [], "relationships": []} if nothing is found."""


class ModelExtractor:
    """Extract entities and relationships from unstructured text with a Bedrock model.

    The model is optional infrastructure: when it is unavailable or answers with
    something unusable, :meth:`extract` logs and returns an empty result so the
    rule-based extractors still carry the sync pass.
    """

    def __init__(self, llm):
        """
        Initialize the extractor.

        Args:
            llm: BedrockLLM (or anything exposing ``generate_json(prompt, system_prompt)``)
        """
        self.llm = llm
        logger.info('Initialized ModelExtractor')

    def extract(self, text: str, context: Optional[str] = None) -> ExtractionResult:
        """
        Extract knowledge from one text unit.

        Args:
            text: Unstructured text
            context: Optional hint such as "chat message" or "saved note"

        Returns:
            ExtractionResult, empty on any model failure
        """
        if not text or not text.strip():
            return ExtractionResult()

        prompt = f'Extract knowledge from the following {context or "text"}:\n\n{text[:MAX_INPUT_CHARS]}'
        try:
            response = self.llm.generate_json(prompt, SYSTEM_PROMPT)
            data = parse_json_response(response)
        except BedrockLLMError as e:
            logger.warning(f'Model extraction unavailable: {e}')
            return ExtractionResult()
        except json.JSONDecodeError as e:
            logger.warning(f'Failed to parse model extraction JSON: {e}')
            return ExtractionResult()

        if not isinstance(data, dict):
            logger.warning(f'Expected object from model extraction, got {type(data).__name__}')
            return ExtractionResult()

        result = ExtractionResult(entities=self._parse_entities(data.get('entities')),
                                  relationships=self._parse_relationships(data.get('relationships')))
        logger.debug(f'Model extracted {len(result.entities)} entities and {len(result.relationships)} relationships')
        return result

    @staticmethod
    def _parse_entities(items: Any) -> List[Entity]:
        entities = []
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict):
                continue
            properties = item.get('properties')
            if not isinstance(properties, dict):
                properties = {key: item[key] for key in ('name', 'description') if item.get(key)}
            entities.append(Entity(id=str(item.get('id') or '').strip(), label=_label(item.get('label')), properties=properties))
        return entities

    @staticmethod
    def _parse_relationships(items: Any) -> List[Relationship]:
        relationships = []
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict):
                continue
            properties: Dict[str, Any] = item.get('properties') if isinstance(item.get('properties'), dict) else {}
            if item.get('description'):
                properties.setdefault('description', item['description'])
            relationships.append(
                Relationship(source_id=str(item.get('sourceEntityId') or '').strip(),
                             target_id=str(item.get('targetEntityId') or '').strip(),
                             type=_relationship_type(item.get('type')),
                             properties=properties,
                             id=item.get('id')))
        return relationships


def _label(value: Any) -> str:
    return re.sub(r'[^A-Za-z0-9_]', '', str(value or ''))


def _relationship_type(value: Any) -> str:
    return re.sub(r'[^A-Z0-9_]', '_', str(value or '').strip().upper()).strip('_')

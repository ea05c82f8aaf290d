"""
Rule-based knowledge extraction.

Every function here is pure: no network calls, no store access. Entity ids are
derived from a natural key wherever one exists, so repeated extraction of the
same file, tag, tool or note lands on the same graph node.
"""

import hashlib
import json
import posixpath
import re
import uuid
from typing import Any, Dict, Iterable, List, Optional, Union

from ..models.core import ConsciousMemory, Entity, ExtractionResult, Relationship
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_USER_ID = 'user-default'

FILE_PATH_PATTERN = re.compile(r'[A-Za-z]:\\(?:[^\\\s<>:"|?*]+\\)*[^\\\s<>:"|?*]+\.\w+'  # C:\dir\file.ext
                               r'|(?<![\w/:.-])(?:\.{0,2}/)?(?:[\w.-]+/)+[\w.-]+\.\w+'  # src/lib/file.ts, ./a/b.py
                               r'|(?<![\w:/])/[^\s"\'<>()]*\.\w+')  # /abs/path/file.ext

LEARNING_SIGNAL = re.compile(r"\b(?:I learned|I understand|I now know|I've learned|I figured out)\b", re.IGNORECASE)
LEARNED_CONCEPT = re.compile(r'(?:learned|understand|know about|figured out)\s+(?:about\s+)?([a-zA-Z0-9 ]+?)(?=[.,;]|$)',
                             re.IGNORECASE | re.MULTILINE)
PREFERENCE_SIGNAL = re.compile(r"\b(?:I prefer|I like|I favor|I'd rather|my preference)\b", re.IGNORECASE)
PREFERENCE = re.compile(r'\b(?:prefer|like|favor)\s+(?:using\s+)?([a-zA-Z0-9 ]+?)(?=\s+over|\s+instead|[.,;]|$)',
                        re.IGNORECASE | re.MULTILINE)
PROJECT_SIGNAL = re.compile(r'\b(?:working on|developing|building|creating|implementing)\b', re.IGNORECASE)
PROJECT = re.compile(
    r'\b(?:working on|developing|building|creating|implementing)\s+(?:the\s+)?([a-zA-Z0-9_ -]+?)'
    r'(?=\s+project|\s+app|\s+application|\s+system|[.,;]|$)', re.IGNORECASE | re.MULTILINE)
USAGE_SIGNAL = re.compile(r'\b(?:using|utilize|work with|implement with)\b', re.IGNORECASE)
USAGE = re.compile(r'\b(?:using|utilize|work with|implement with)\s+([a-zA-Z0-9.\-]+)', re.IGNORECASE)

KNOWN_TECHNOLOGIES = ('React', 'Vue', 'Angular', 'TypeScript', 'JavaScript', 'Python', 'Java', 'C#', 'C++', 'Node.js',
                      'Express', 'Django', 'Flask', 'Spring', 'ASP.NET', 'Ruby on Rails', 'MongoDB', 'PostgreSQL', 'MySQL',
                      'Redis', 'Neo4j', 'ChromaDB', 'Docker', 'Kubernetes', 'AWS', 'Azure', 'GCP', 'Git', 'GitHub', 'VSCode',
                      'IntelliJ', 'Next.js', 'Gatsby', 'Webpack', 'Vite', 'Jest', 'Cypress', 'Playwright')


def slugify(value: str) -> str:
    slug = re.sub(r'[^a-z0-9#+.]+', '-', value.strip().lower())
    return slug.strip('-')


def normalize_path(path: str) -> str:
    normalized = posixpath.normpath(path.strip().replace('\\', '/'))
    return normalized


def normalize_tag(tag: str) -> str:
    return re.sub(r'\s+', '-', tag.strip().lower())


def generate_entity_id(label: str, value: Optional[str] = None) -> str:
    """Derive an entity id from its label and natural key.

    Args:
        label: Node label
        value: Identifying value (path, tag text, tool name, memory id, ...)

    Returns:
        Deterministic id, or a random one for labels without a natural key
    """
    if label == 'ToolInvocation' or not value:
        return f'{"inv" if label == "ToolInvocation" else label.lower()}-{uuid.uuid4()}'
    if label == 'FilePath':
        return f'filepath-{hashlib.sha256(normalize_path(value).encode("utf-8")).hexdigest()[:16]}'
    if label == 'Tag':
        return f'tag-{normalize_tag(value)}'
    if label == 'Tool':
        return f'tool-{slugify(value.replace("_", "-"))}'
    if label == 'ConsciousMemory':
        return f'cm-{value}'
    if label == 'Session':
        return f'session-{value}'
    return f'{label.lower()}-{slugify(value)}'


def extract_file_paths(text: str) -> ExtractionResult:
    """Find path-like tokens in free text and turn each distinct path into a FilePath entity."""
    result = ExtractionResult()
    seen = set()

    for match in FILE_PATH_PATTERN.finditer(text or ''):
        path = match.group(0).rstrip('.')
        entity_id = generate_entity_id('FilePath', path)
        if entity_id in seen:
            continue
        seen.add(entity_id)

        filename = re.split(r'[/\\]', path)[-1]
        extension = filename[filename.rfind('.'):] if '.' in filename else ''
        result.entities.append(
            Entity(id=entity_id,
                   label='FilePath',
                   properties={
                       'path': normalize_path(path),
                       'filename': filename,
                       'extension': extension,
                       'type': 'file' if extension else 'directory',
                       'isAbsolute': path.startswith('/') or bool(re.match(r'^[A-Za-z]:\\', path)),
                   }))

    return result


def _tool_calls(payload: Union[str, Iterable[Dict[str, Any]], None]) -> List[Dict[str, Any]]:
    if not payload:
        return []
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as e:
            logger.warning(f'Ignoring unparseable tool invocation payload: {e}')
            return []
    if isinstance(payload, dict):
        payload = [payload]
    return [call for call in payload if isinstance(call, dict)]


def extract_tool_invocations(payload: Union[str, Iterable[Dict[str, Any]], None]) -> ExtractionResult:
    """Walk tool-call records, producing a Tool, a ToolInvocation and an OF_TYPE edge per call.

    Args:
        payload: List of tool-call dicts (or its JSON text) with ``toolName``, ``args`` and ``result``

    Returns:
        Extraction result; malformed calls are skipped
    """
    result = ExtractionResult()

    for call in _tool_calls(payload):
        tool_name = call.get('toolName') or call.get('tool_name') or call.get('name')
        if not tool_name:
            continue

        server, _, name = tool_name.partition('_')
        tool_id = generate_entity_id('Tool', tool_name)
        invocation_id = generate_entity_id('ToolInvocation')

        result.entities.append(
            Entity(id=tool_id, label='Tool', properties={
                'name': name or server,
                'server': server,
                'fullToolName': tool_name
            }))
        result.entities.append(
            Entity(id=invocation_id,
                   label='ToolInvocation',
                   properties={
                       'toolName': tool_name,
                       'toolId': tool_id,
                       'toolCallId': call.get('toolCallId'),
                       'args': call.get('args'),
                       'result': call.get('result'),
                   }))
        result.relationships.append(
            Relationship(source_id=invocation_id, target_id=tool_id, type='OF_TYPE', id=f'rel-{invocation_id}-{tool_id}'))

    return result


def _unique(values: Iterable[str], min_length: int = 3, max_length: int = 50) -> List[str]:
    seen = []
    for value in values:
        value = value.strip()
        if min_length <= len(value) < max_length and value not in seen:
            seen.append(value)
    return seen


def find_technologies(text: str) -> List[str]:
    found = [tech for tech in KNOWN_TECHNOLOGIES if re.search(r'(?<![\w.])' + re.escape(tech) + r'(?!\w)', text, re.IGNORECASE)]
    for candidate in USAGE.findall(text):
        candidate = candidate.strip().rstrip('.')
        if 1 < len(candidate) < 30 and candidate.lower() not in (t.lower() for t in found):
            found.append(candidate)
    return found


def extract_content_signals(memory: ConsciousMemory, user_id: str = DEFAULT_USER_ID) -> ExtractionResult:
    """Link the default user to concepts, preferences, projects and technologies mentioned in a note."""
    result = ExtractionResult()
    content = memory.content or ''

    signals = []
    if LEARNING_SIGNAL.search(content):
        signals += [('Concept', 'LEARNED_ABOUT', value) for value in _unique(LEARNED_CONCEPT.findall(content))]
    if PREFERENCE_SIGNAL.search(content):
        signals += [('Preference', 'PREFERS', value) for value in _unique(PREFERENCE.findall(content))]
    if PROJECT_SIGNAL.search(content):
        signals += [('Project', 'WORKS_ON', value) for value in _unique(PROJECT.findall(content))]
    if USAGE_SIGNAL.search(content):
        signals += [('Technology', 'USES', value) for value in find_technologies(content)]

    if not signals:
        return result

    result.entities.append(Entity(id=user_id, label='User', properties={'name': 'Default User'}))
    for label, rel_type, value in signals:
        entity_id = generate_entity_id(label, value)
        result.entities.append(Entity(id=entity_id, label=label, properties={'name': value}))
        result.relationships.append(
            Relationship(source_id=user_id,
                         target_id=entity_id,
                         type=rel_type,
                         properties={'sourceMemoryId': memory.id}))

    return result


def extract_from_conscious_memory(memory: ConsciousMemory) -> ExtractionResult:
    """Project a saved note and its metadata into graph entities.

    Produces the ConsciousMemory node, its Tag nodes (HAS_TAG), its Session
    node (PART_OF_SESSION), RELATED_TO edges towards other notes and the
    content-signal entities.
    """
    result = ExtractionResult()
    if not memory or not memory.id:
        logger.warning('Invalid conscious memory provided for extraction')
        return result

    cm_id = generate_entity_id('ConsciousMemory', memory.id)
    result.entities.append(
        Entity(id=cm_id,
               label='ConsciousMemory',
               properties={
                   'memoryId': memory.id,
                   'content': memory.content,
                   'importance': memory.importance,
                   'source': memory.source,
                   'context': memory.context,
                   'tags': memory.tags,
                   'createdAt': memory.created_at,
                   'updatedAt': memory.updated_at,
               }))

    for tag in memory.tags:
        if not tag.strip():
            continue
        tag_id = generate_entity_id('Tag', tag)
        result.entities.append(Entity(id=tag_id, label='Tag', properties={'name': tag.strip()}))
        result.relationships.append(Relationship(source_id=cm_id, target_id=tag_id, type='HAS_TAG'))

    for related_id in memory.related_memory_ids:
        if not related_id.strip() or related_id == memory.id:
            continue
        result.relationships.append(
            Relationship(source_id=cm_id, target_id=generate_entity_id('ConsciousMemory', related_id), type='RELATED_TO'))

    if memory.session_id:
        session_id = generate_entity_id('Session', memory.session_id)
        result.entities.append(Entity(id=session_id, label='Session', properties={'sessionId': memory.session_id}))
        result.relationships.append(Relationship(source_id=cm_id, target_id=session_id, type='PART_OF_SESSION'))

    result.extend(extract_content_signals(memory))
    return result

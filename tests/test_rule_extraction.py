"""
Tests for the rule-based extractors.
"""

from kgmemory.models.core import ConsciousMemory
from kgmemory.services.rule_extraction import (DEFAULT_USER_ID, extract_content_signals, extract_file_paths,
                                               extract_from_conscious_memory, extract_tool_invocations,
                                               generate_entity_id)


def _memory(**overrides):
    fields = dict(id='mem_1',
                  content='Remember to rotate the API keys',
                  tags=['Security', 'ops'],
                  importance=7,
                  session_id='chat-42',
                  source='explicit',
                  created_at='2024-05-01T10:00:00+00:00')
    fields.update(overrides)
    return ConsciousMemory(**fields)


class TestEntityIds:
    """Tests for deterministic id derivation."""

    def test_file_path_id_is_stable_across_spellings(self):
        assert generate_entity_id('FilePath', 'src/app/main.py') == generate_entity_id('FilePath', 'src/app/main.py')
        assert generate_entity_id('FilePath', 'src/app/../app/main.py') == generate_entity_id('FilePath', 'src/app/main.py')
        assert generate_entity_id('FilePath', 'src\\app\\main.py') == generate_entity_id('FilePath', 'src/app/main.py')

    def test_tag_id_is_normalized(self):
        assert generate_entity_id('Tag', '  Machine Learning ') == 'tag-machine-learning'
        assert generate_entity_id('Tag', 'machine learning') == generate_entity_id('Tag', 'Machine Learning')

    def test_tool_and_fixed_prefixes(self):
        assert generate_entity_id('Tool', 'github_create_issue') == 'tool-github-create-issue'
        assert generate_entity_id('ConsciousMemory', 'mem_1') == 'cm-mem_1'
        assert generate_entity_id('Session', 'abc') == 'session-abc'
        assert generate_entity_id('Technology', 'Node.js') == 'technology-node.js'

    def test_invocations_are_unique(self):
        assert generate_entity_id('ToolInvocation') != generate_entity_id('ToolInvocation')
        assert generate_entity_id('ToolInvocation').startswith('inv-')


class TestFilePaths:

    def test_finds_relative_absolute_and_windows_paths(self):
        text = 'Edit src/utils/config.py, then check /etc/nginx/nginx.conf and C:\\Users\\me\\notes.txt.'
        paths = {e.properties['path']: e for e in extract_file_paths(text).entities}

        assert set(paths) == {'src/utils/config.py', '/etc/nginx/nginx.conf', 'C:/Users/me/notes.txt'}
        assert paths['src/utils/config.py'].properties['isAbsolute'] is False
        assert paths['/etc/nginx/nginx.conf'].properties['isAbsolute'] is True
        assert paths['C:/Users/me/notes.txt'].properties['isAbsolute'] is True
        assert paths['src/utils/config.py'].properties['extension'] == '.py'
        assert paths['src/utils/config.py'].properties['filename'] == 'config.py'

    def test_repeated_path_yields_one_entity(self):
        result = extract_file_paths('open ./docs/readme.md and ./docs/readme.md again')
        assert len(result.entities) == 1

    def test_urls_are_not_paths(self):
        assert extract_file_paths('see https://example.com/docs/page.html').is_empty()

    def test_same_path_in_two_calls_gets_same_id(self):
        first = extract_file_paths('look at lib/parser.ts').entities[0].id
        second = extract_file_paths('lib/parser.ts was changed').entities[0].id
        assert first == second


class TestToolInvocations:

    def test_tool_invocation_and_edge(self):
        calls = [{'toolName': 'github_create_issue', 'toolCallId': 'call-1', 'args': {'title': 'Bug'}, 'result': 'ok'}]
        result = extract_tool_invocations(calls)

        tool, invocation = result.entities
        assert tool.id == 'tool-github-create-issue'
        assert tool.properties == {'name': 'create_issue', 'server': 'github', 'fullToolName': 'github_create_issue'}
        assert invocation.label == 'ToolInvocation'
        assert invocation.properties['toolCallId'] == 'call-1'

        edge, = result.relationships
        assert (edge.source_id, edge.type, edge.target_id) == (invocation.id, 'OF_TYPE', tool.id)

    def test_accepts_json_text_and_skips_malformed(self):
        payload = '[{"toolName": "search"}, {"args": {}}, "junk"]'
        result = extract_tool_invocations(payload)
        assert [e.label for e in result.entities] == ['Tool', 'ToolInvocation']

    def test_unparseable_payload_is_empty(self):
        assert extract_tool_invocations('{not json').is_empty()
        assert extract_tool_invocations(None).is_empty()


class TestConsciousMemoryWalk:

    def test_note_tags_and_session(self):
        result = extract_from_conscious_memory(_memory())
        by_id = {e.id: e for e in result.entities}

        note = by_id['cm-mem_1']
        assert note.label == 'ConsciousMemory'
        assert note.properties['importance'] == 7
        assert by_id['tag-security'].properties['name'] == 'Security'
        assert 'tag-ops' in by_id
        assert by_id['session-chat-42'].label == 'Session'

        edges = {(r.source_id, r.type, r.target_id) for r in result.relationships}
        assert ('cm-mem_1', 'HAS_TAG', 'tag-security') in edges
        assert ('cm-mem_1', 'HAS_TAG', 'tag-ops') in edges
        assert ('cm-mem_1', 'PART_OF_SESSION', 'session-chat-42') in edges

    def test_related_memories_skip_self(self):
        result = extract_from_conscious_memory(_memory(related_memory_ids=['mem_2', 'mem_1', ' ']))
        related = [r for r in result.relationships if r.type == 'RELATED_TO']

        assert [(r.source_id, r.target_id) for r in related] == [('cm-mem_1', 'cm-mem_2')]

    def test_relationship_ids_default_to_endpoints(self):
        result = extract_from_conscious_memory(_memory(tags=['ops']))
        has_tag = next(r for r in result.relationships if r.type == 'HAS_TAG')
        assert has_tag.id == 'cm-mem_1_HAS_TAG_tag-ops'

    def test_extraction_is_deterministic(self):
        first = extract_from_conscious_memory(_memory())
        second = extract_from_conscious_memory(_memory())
        assert [e.id for e in first.entities] == [e.id for e in second.entities]


class TestContentSignals:

    def test_no_signal_no_entities(self):
        assert extract_content_signals(_memory(content='The meeting moved to Tuesday.')).is_empty()

    def test_preference_project_and_technology(self):
        memory = _memory(content='I prefer TypeScript over JavaScript. We are building the billing app using React.')
        result = extract_content_signals(memory)
        edges = {(r.type, r.target_id) for r in result.relationships}

        assert result.entities[0].id == DEFAULT_USER_ID
        assert ('PREFERS', 'preference-typescript') in edges
        assert ('WORKS_ON', 'project-billing') in edges
        assert ('USES', 'technology-react') in edges
        assert all(r.properties['sourceMemoryId'] == 'mem_1' for r in result.relationships)

    def test_learning_signal(self):
        result = extract_content_signals(_memory(content='I learned about vector databases.'))
        assert ('LEARNED_ABOUT', 'concept-vector-databases') in {(r.type, r.target_id) for r in result.relationships}

    def test_using_inside_other_words_is_ignored(self):
        assert extract_content_signals(_memory(content='The outage kept causing delays.')).is_empty()

import json

from storycraft.json_parser import (
    JsonRepairParser, escape_control_chars_in_strings, parse_ai_json_response, unescape, MAX_PITCH_LENGTH,
)

PITCH = "A retired lighthouse keeper discovers a message in a bottle that rewrites his family history."


def payload(**overrides):
    data = {
        'analysis': {
            'keyTopics': ['lighthouse', 'family'],
            'sentiment': 'positive',
            'coreMessage': 'The past is never lost',
            'targetAudience': 'Adults 25-45',
        },
        'generatedPitch': PITCH,
        'rationale': 'Strong emotional hook',
    }
    data.update(overrides)
    return data


def test_valid_json_parses_without_repairs():
    result = parse_ai_json_response(json.dumps(payload()))

    assert result.success
    assert result.data['generatedPitch'] == PITCH
    assert result.repair_attempts == []


def test_markdown_fence_and_trailing_comma_are_cleaned():
    raw = "```json\n" + json.dumps(payload())[:-1] + ",}\n```"

    result = parse_ai_json_response(raw)

    assert result.success
    assert result.data['analysis']['keyTopics'] == ['lighthouse', 'family']
    assert len(result.repair_attempts) == 1


def test_raw_newlines_inside_strings_are_escaped():
    raw = json.dumps(payload()).replace('lighthouse keeper', 'lighthouse\nkeeper')

    result = parse_ai_json_response(raw)

    assert result.success
    assert 'lighthouse\nkeeper' in result.data['generatedPitch']


def test_missing_closing_brace_is_recovered():
    raw = json.dumps(payload())[:-1]

    result = parse_ai_json_response(raw)

    assert result.success
    assert result.data['generatedPitch'] == PITCH


def test_truncated_response_is_reconstructed_from_fields():
    raw = ('Here you go: {"analysis": {"keyTopics": ["sea", "memory"], "sentiment": "hopeful", '
           f'"coreMessage": "Home"}}, "generatedPitch": "{PITCH}", "rationale": "cut off here')

    result = parse_ai_json_response(raw)

    assert result.success
    assert result.data['generatedPitch'] == PITCH
    assert result.data['analysis']['keyTopics'] == ['sea', 'memory']
    assert result.data['analysis']['targetAudience'] == 'General audience'
    assert len(result.repair_attempts) == 2


def test_short_pitch_fails_schema():
    result = parse_ai_json_response(json.dumps(payload(generatedPitch='Too short')))

    assert not result.success
    assert result.error == 'All parsing strategies failed'
    assert any('at least 50' in attempt for attempt in result.repair_attempts)


def test_overlong_pitch_fails_schema():
    error = JsonRepairParser.validate_schema(payload(generatedPitch='x' * (MAX_PITCH_LENGTH + 1)))

    assert 'exceeds maximum length' in error


def test_rejects_empty_and_non_string_input():
    assert parse_ai_json_response('   ').error == 'Input must be a non-empty string'
    assert parse_ai_json_response(None).error == 'Input must be a non-empty string'


def test_rejects_null_bytes():
    result = parse_ai_json_response('{"a": "\x00"}')

    assert not result.success
    assert result.error == 'Input contains invalid characters'


def test_escape_control_chars_leaves_structure_alone():
    text = '{\n  "a": "line1\nline2\tend"\n}'

    assert escape_control_chars_in_strings(text) == '{\n  "a": "line1\\nline2\\tend"\n}'


def test_deeply_nested_input_fails_cleanly():
    result = parse_ai_json_response('[' * 49999)

    assert not result.success
    assert result.error == 'All parsing strategies failed'
    assert result.repair_attempts[0].startswith('Direct parsing failed')


def test_unescape_keeps_escaped_backslash_literal():
    assert unescape(r'C:\\new\nline \"quoted\"') == 'C:\\new\nline "quoted"'

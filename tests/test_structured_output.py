import json
from unittest.mock import MagicMock

from storycraft.errors import GeminiServiceError
from storycraft.gemini import GenerationResult
from storycraft.structured_output import (
    StructuredOutputService, close_open_structures, create_fallback_structured_pitch, recover_truncated_json,
)

CHARACTERS = {'characters': [{'name': '小芳', 'age': 28, 'gender': '女性', 'motivation': '開一間自己的麵店'}]}
SCENES = {'scenes': [
    {'sceneNumber': 1, 'location': '夜市', 'emotionalTone': '期待', 'duration': 20},
    {'sceneNumber': 2, 'location': '麵店', 'emotionalTone': '感動', 'duration': 30},
]}
FINAL = {
    'title': '夜市麵香',
    'genre': '勵志短片',
    'targetAudience': '年輕創業者',
    'coreMessage': '堅持夢想',
    'finalPitch': '二十八歲的小芳每天在夜市擺攤，靠著祖母傳下來的湯頭吸引了一群熟客。'
                  '當房東突然收回攤位時，她必須在一週內找到新的落腳處，否則夢想就此破滅。',
    'tags': ['夜市', '創業'],
}


def result(payload, finish='STOP'):
    text = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
    return GenerationResult(text=text, finish_reason=finish, model='gemini-2.5-flash')


def test_three_stage_generation():
    gemini = MagicMock()
    gemini.generate_text.side_effect = [result(CHARACTERS), result(SCENES), result(FINAL)]

    pitch = StructuredOutputService(gemini).generate_structured_pitch('夜市麵店的故事', 'full')

    assert pitch.title == '夜市麵香'
    assert pitch.characters[0]['name'] == '小芳'
    assert len(pitch.scenes) == 2
    assert pitch.estimated_duration == 50
    assert not pitch.is_fallback
    assert pitch.to_dict()['targetAudience'] == '年輕創業者'
    assert '為小芳創建' in gemini.generate_text.call_args_list[1].args[0]


def test_gemini_failures_produce_fallback_pitch():
    gemini = MagicMock()
    gemini.generate_text.side_effect = GeminiServiceError('down', 'SERVER_ERROR')

    pitch = StructuredOutputService(gemini).generate_structured_pitch('這個產品的利潤驚人', 'partial')

    assert pitch.is_fallback
    assert pitch.title == '電商揭秘故事'
    assert pitch.characters[0]['name'] == '電商達人'
    assert len(pitch.scenes) == 3
    assert pitch.final_pitch.startswith('故事講述32歲的電商達人')
    assert gemini.generate_text.call_count == 6


def test_truncated_stage_is_recovered():
    gemini = MagicMock()
    gemini.generate_text.side_effect = [
        result('```json\n{"characters":[{"name":"阿明","age":40', finish='MAX_TOKENS'),
        result(SCENES),
        result(FINAL),
    ]

    pitch = StructuredOutputService(gemini).generate_structured_pitch('故事', 'full')

    assert pitch.characters == [{'name': '阿明', 'age': 40}]


def test_close_open_structures():
    assert close_open_structures('{"a":[{"b":"x') == '{"a":[{"b":"x"}]}'
    assert close_open_structures('{"a":1,') == '{"a":1}'
    assert close_open_structures('{"a":') == '{"a":null}'


def test_recover_uses_default_when_key_missing():
    recovered = recover_truncated_json('not json at all', 'scenes')

    assert len(recovered['scenes']) == 3
    assert recover_truncated_json('{"finalPitch": ""}', 'finalPitch')['finalPitch']


def test_fallback_structured_pitch_core_message():
    pitch = create_fallback_structured_pitch('x' * 150)

    assert pitch.core_message == 'x' * 100 + '...'
    assert pitch.estimated_duration == 65
    assert pitch.tags == ['故事']

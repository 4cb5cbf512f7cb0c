import json
from unittest.mock import MagicMock, patch

import pytest

from storycraft.complexity import ContentSource
from storycraft.errors import GeminiServiceError
from storycraft.gemini import GenerationResult
from storycraft.reference import (
    ContentCache, ReferenceProcessor, ReferenceSource, WARNING_EMPTY_RESPONSE, WARNING_LIMITED,
    WARNING_MODEL_UNAVAILABLE, WARNING_PARTIAL, assess_content_quality, build_pitch_prompt,
    create_enhanced_fallback_pitch, create_fallback_pitch, extract_keywords,
)
from storycraft.structured_output import StructuredPitch
from storycraft.youtube import ProcessingResult

PITCH = ('A young baker in Taipei inherits her grandmother\'s secret recipe book and must win the '
         'city night market contest to save the family shop.')
STORY = 'A young baker in Taipei inherits a recipe book from her grandmother and enters a contest.'


def gemini_json(pitch=PITCH, finish='STOP'):
    payload = {
        'analysis': {'keyTopics': ['baking', 'family'], 'sentiment': 'hopeful',
                     'coreMessage': 'Tradition matters', 'targetAudience': 'Foodies'},
        'generatedPitch': pitch,
        'rationale': 'Emotional and visual',
    }
    return GenerationResult(text=json.dumps(payload), finish_reason=finish, model='gemini-2.5-flash')


@pytest.fixture
def gemini():
    return MagicMock()


@pytest.fixture
def youtube():
    return MagicMock()


@pytest.fixture
def processor(gemini, youtube):
    return ReferenceProcessor(gemini=gemini, youtube=youtube)


def text_source(transcript=STORY):
    return ReferenceSource(type='text_input', transcript=transcript)


def test_text_reference_standard_generation(processor, gemini):
    gemini.generate_text.return_value = gemini_json()

    content = processor.process_reference(text_source(), target_language='English')

    assert content.generated_pitch == PITCH
    assert content.key_topics == ['baking', 'family']
    assert content.sentiment == 'hopeful'
    assert content.content_quality == 'full'
    assert content.source.processing_status == 'completed'
    assert content.processing['complexity'] == 'simple'
    assert content.processing['allocation']['max_tokens'] == 800
    data = content.to_dict()
    assert data['extractedContent']['transcript'] == STORY
    assert data['isStructuredOutput'] is False


def test_processed_content_is_cached(processor, gemini):
    gemini.generate_text.return_value = gemini_json()

    first = processor.process_reference(text_source(), target_language='English')
    second = processor.process_reference(text_source(), target_language='English')
    processor.process_reference(text_source(), target_language='繁體中文')

    assert second is first
    assert gemini.generate_text.call_count == 2


def test_unparseable_response_uses_fallback_pitch(processor, gemini):
    gemini.generate_text.return_value = GenerationResult('I cannot help with that.', 'STOP', 'm')
    source = ReferenceSource(type='youtube', title='Grandma Bakes', description='A long description ' * 5)

    content = processor.process_reference(source, target_language='English', target_style='Documentary')

    assert content.generated_pitch.startswith('Discover the story behind "Grandma Bakes"')
    assert 'This documentary brings' in content.generated_pitch
    assert content.processing['rationale'].startswith('Generated using enhanced fallback')
    assert gemini.generate_text.call_count == 1


def test_token_limit_retries_with_smaller_budget(processor, gemini):
    gemini.generate_text.side_effect = [
        GenerationResult('The story begins with a baker who', 'MAX_TOKENS', 'm'),
        gemini_json(),
    ]

    content = processor.process_reference(text_source(), target_language='English')

    assert content.generated_pitch == PITCH
    first_budget = gemini.generate_text.call_args_list[0].kwargs['max_tokens']
    second_budget = gemini.generate_text.call_args_list[1].kwargs['max_tokens']
    assert second_budget < first_budget


def test_empty_response_at_token_limit_retries_with_adjusted_budget(processor, gemini):
    gemini.generate_text.side_effect = [
        GeminiServiceError('No response generated from Gemini', 'EMPTY_RESPONSE',
                           metadata={'finishReason': 'MAX_TOKENS'}),
        gemini_json(),
    ]

    content = processor.process_reference(text_source(), target_language='English')

    assert content.generated_pitch == PITCH
    assert gemini.generate_text.call_count == 2
    first_budget = gemini.generate_text.call_args_list[0].kwargs['max_tokens']
    second_budget = gemini.generate_text.call_args_list[1].kwargs['max_tokens']
    assert second_budget < first_budget


def test_repeated_empty_response_at_token_limit_falls_back(processor, gemini):
    gemini.generate_text.side_effect = GeminiServiceError('empty', 'EMPTY_RESPONSE',
                                                          metadata={'finishReason': 'MAX_TOKENS'})

    content = processor.process_reference(text_source(), target_language='English')

    assert content.warning == WARNING_EMPTY_RESPONSE
    assert gemini.generate_text.call_count == 2


def test_short_pitch_is_rejected(processor, gemini):
    gemini.generate_text.return_value = gemini_json(pitch='Tiny pitch')

    content = processor.process_reference(text_source(), target_language='English')

    assert content.generated_pitch.startswith('Experience "Untitled Content" in a new way')
    assert content.processing['rationale'].startswith('Generated using enhanced fallback')


def test_empty_response_uses_enhanced_fallback(processor, gemini):
    gemini.generate_text.side_effect = GeminiServiceError('empty', 'EMPTY_RESPONSE')

    content = processor.process_reference(text_source(), target_language='English')

    assert content.warning == WARNING_EMPTY_RESPONSE
    assert content.processing['fallback'] is True
    assert content.content_quality == 'full'


def test_no_models_available_degrades_to_metadata_only(processor, gemini):
    gemini.generate_text.side_effect = GeminiServiceError('none', 'NO_MODELS_AVAILABLE')

    content = processor.process_reference(text_source(), target_language='繁體中文')

    assert content.content_quality == 'metadata-only'
    assert content.warning == WARNING_MODEL_UNAVAILABLE
    assert content.sentiment == 'neutral'
    assert content.generated_pitch.startswith('以全新的方式體驗「Untitled Content」')


def test_other_gemini_errors_propagate(processor, gemini):
    gemini.generate_text.side_effect = GeminiServiceError('denied', 'AUTH_ERROR')

    with pytest.raises(GeminiServiceError):
        processor.process_reference(text_source(), target_language='English')


def test_structured_output_for_traditional_chinese(processor):
    pitch = StructuredPitch(title='夜市', genre='劇情片', target_audience='一般觀眾', core_message='夢想',
                            characters=[{'name': '小芳'}], scenes=[], final_pitch='故事' * 30,
                            estimated_duration=60, tags=['夜市'])
    with patch('storycraft.reference.StructuredOutputService') as service_cls:
        service_cls.return_value.generate_structured_pitch.return_value = pitch

        content = processor.process_reference(text_source(), target_language='繁體中文', use_structured=True)

    assert content.is_structured_output
    assert content.structured_pitch['title'] == '夜市'
    assert content.key_topics == ['夜市']
    allocation = service_cls.return_value.generate_structured_pitch.call_args.args[2]
    assert allocation.is_structured_output


def test_structured_flag_ignored_for_english(processor, gemini):
    gemini.generate_text.return_value = gemini_json()

    with patch('storycraft.reference.StructuredOutputService') as service_cls:
        content = processor.process_reference(text_source(), target_language='English', use_structured=True)

    service_cls.assert_not_called()
    assert not content.is_structured_output


def test_extract_youtube_source(processor, youtube):
    youtube.process_youtube_content.return_value = ProcessingResult(
        id='p1', video_id='abcdefghijk', content_type='shorts', title='Noodle Flip', description='Chef tricks',
        confidence=0.75, processing_strategy='enhanced_shorts', duration=30,
    )

    source = processor.extract_youtube_source('https://youtube.com/shorts/abcdefghijk')

    youtube.process_youtube_content.assert_called_once_with('https://youtube.com/shorts/abcdefghijk', 'shorts')
    assert source.processing_status == 'completed'
    assert source.transcript == 'Chef tricks'
    assert source.is_shorts


def test_extract_youtube_source_error_is_friendly(processor, youtube):
    youtube.process_youtube_content.return_value = ProcessingResult(
        id='p1', video_id=None, content_type='unknown', title='Processing Error', description='',
        confidence=0, processing_strategy='error', error='YouTube API quota exceeded or invalid key',
    )

    source = processor.extract_youtube_source('https://youtu.be/abcdefghijk')

    assert source.processing_status == 'error'
    assert source.error_message == 'YouTube API quota exceeded. Please try again later.'


# --------------------------------------------------------------------------
# Helpers
# --------------------------------------------------------------------------

def test_quality_tiers():
    long_desc = ReferenceSource(type='youtube', title='T', description='d' * 250)
    mid_desc = ReferenceSource(type='youtube', title='T', description='d' * 80)
    transcript = ReferenceSource(type='youtube', title='T', transcript='spoken words')

    assert assess_content_quality(long_desc)['warning'] == WARNING_PARTIAL
    assert assess_content_quality(mid_desc)['quality'] == 'metadata-only'
    assert assess_content_quality(mid_desc)['warning'] == WARNING_LIMITED
    assert assess_content_quality(transcript) == {'content': 'spoken words', 'quality': 'full', 'warning': None}


def test_overlong_content_is_truncated():
    assessed = assess_content_quality(ReferenceSource(type='youtube', transcript='x' * 60000))

    assert assessed['content'].endswith('[Content truncated for processing efficiency]')
    assert 'truncated' in assessed['warning']


def test_extract_keywords_by_frequency():
    assert extract_keywords('short') == []
    assert extract_keywords('Bread bread BREAD, oven oven and flour!')[:2] == ['bread', 'oven']


def test_fallback_pitch_languages():
    source = ReferenceSource(type='youtube', title='Cats')

    assert create_fallback_pitch(source, target_language='English').startswith('Experience "Cats"')
    assert create_fallback_pitch(source, target_language='简体中文').startswith('以全新的方式体验「Cats」')


def test_enhanced_fallback_for_comedic_shorts():
    source = ReferenceSource(type='youtube', title='這也太扯了吧😂', url='https://youtube.com/shorts/abcdefghijk')

    pitch = create_enhanced_fallback_pitch(source, target_language='繁體中文')

    assert pitch.startswith('【驚喜發現】「這也太扯了吧😂」')
    assert create_enhanced_fallback_pitch(source, target_language='English').startswith('Experience')


def test_shorts_prompt_includes_style_guidance(processor):
    source = ReferenceSource(type='youtube', title='Kitchen hack', url='https://youtube.com/shorts/abcdefghijk')
    complexity = processor.analyzer.analyze(
        ContentSource(title='Kitchen hack'))

    prompt = build_pitch_prompt(source, 'content', 'partial', complexity, 'viral', '繁體中文')

    assert 'YouTube Shorts (viral, 15-60s)' in prompt
    assert '專注於清晰的步驟說明' in prompt
    assert 'STYLE: viral' in prompt
    assert prompt.endswith('IMPORTANT: Generate all content in Traditional Chinese (繁體中文)')


def test_content_cache_expiry_and_eviction():
    now = [0.0]
    cache = ContentCache(ttl=10, max_size=2, clock=lambda: now[0])
    cache.set('a', 'A')
    cache.set('b', 'B')
    cache.set('c', 'C')

    assert cache.get('a') is None
    assert cache.get('b') == 'B'
    now[0] = 11
    assert cache.get('c') is None
    assert len(cache) == 1

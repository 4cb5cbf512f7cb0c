from storycraft.complexity import ComplexityLevel, ComplexityMetrics, ContentSource, ProcessingStrategy, VideoAnalysis
from storycraft.content_processor import (
    AdaptiveContentProcessor, SMART_MARKER, LIGHT_MARKER, WARNING_EXTREME, estimate_tokens, light_truncation,
    smart_truncation,
)

processor = AdaptiveContentProcessor()


def complexity(level, budget):
    return ComplexityMetrics(
        total_score=0,
        level=level,
        recommended_strategy=ProcessingStrategy(budget, True, 'none', 'standard', 20000),
    )


def test_simple_transcript_is_kept_whole():
    source = ContentSource(title='Cat video', transcript='The cat jumps over the fence.')

    result = processor.process_content(source, complexity(ComplexityLevel.SIMPLE, 800))

    assert result.content == 'Title: Cat video\n\nContent: The cat jumps over the fence.'
    assert result.content_quality == 'full'
    assert result.strategy == 'simple_full_content'
    assert not result.simplification_applied


def test_simple_without_transcript_is_partial():
    source = ContentSource(title='Cat video', description='A cat')

    result = processor.process_content(source, complexity(ComplexityLevel.SIMPLE, 800))

    assert 'Description: A cat' in result.content
    assert result.content_quality == 'partial'


def test_simple_with_analysis_includes_all_sections():
    analysis = VideoAnalysis(
        characters=[{'name': 'Mei', 'description': 'a chef', 'role': 'lead'}],
        scene_breakdown=[{'description': 'kitchen', 'startTime': 0, 'endTime': 5}],
        dialogues=[{'speaker': 'Mei', 'text': 'Taste this', 'emotion': 'proud'}],
        mood='warm',
        story_structure={'hook': 'smell', 'climax': 'taste', 'resolution': 'smile'},
    )
    source = ContentSource(title='Cooking', video_analysis=analysis)

    content = processor.process_content(source, complexity(ComplexityLevel.SIMPLE, 800)).content

    assert '1. Mei: a chef (lead)' in content
    assert '1. kitchen (0s-5s)' in content
    assert '- Hook: smell' in content
    assert '1. Mei: "Taste this" (proud)' in content
    assert 'Mood: warm' in content


def test_moderate_truncates_over_budget():
    source = ContentSource(title='Long', transcript='word ' * 400)

    result = processor.process_content(source, complexity(ComplexityLevel.MODERATE, 100))

    assert result.content.endswith(LIGHT_MARKER)
    assert len(result.content) == 300 + len(LIGHT_MARKER)
    assert result.truncated
    assert result.simplification_applied
    assert result.warning is not None


def test_complex_prefers_paragraph_boundary():
    body = 'a' * 250 + '\n\n' + 'b' * 200
    source = ContentSource(title='T', transcript=body)

    result = processor.process_content(source, complexity(ComplexityLevel.COMPLEX, 100))

    assert result.content.endswith(SMART_MARKER)
    assert 'b' not in result.content.replace(SMART_MARKER, '')
    assert result.content_quality == 'partial'


def test_extreme_uses_metadata_only():
    source = ContentSource(title='Epic', description='d' * 300, transcript='t' * 5000)

    result = processor.process_content(source, complexity(ComplexityLevel.EXTREME, 400))

    assert result.content == f"Title: Epic\nBrief: {'d' * 100}"
    assert result.content_quality == 'metadata-only'
    assert result.warning == WARNING_EXTREME


def test_truncation_helpers_leave_short_content():
    assert light_truncation('short', 10) == 'short'
    assert smart_truncation('short', 10) == 'short'


def test_estimate_tokens_rounds_up():
    assert estimate_tokens('abc') == 2
    assert estimate_tokens('') == 0


def test_processing_summary():
    source = ContentSource(title='Cat', transcript='meow')
    result = processor.process_content(source, complexity(ComplexityLevel.SIMPLE, 800))

    summary = AdaptiveContentProcessor.create_processing_summary(result)

    assert summary.startswith('simple_full_content:')
    assert 'quality=full' in summary

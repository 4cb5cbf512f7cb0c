from unittest.mock import MagicMock, patch

import pytest

from storycraft.complexity import VideoAnalysis
from storycraft.metrics import ProcessingMonitor
from storycraft.resilience import CircuitBreaker, RetryService
from storycraft.youtube import (
    FALLBACK_WARNING, VideoMetadata, YouTubeProcessingService, analyze_shorts_content, calculate_viral_potential,
    detect_shorts_style, extract_video_id, is_likely_shorts, parse_duration,
)

VIDEO_URL = 'https://www.youtube.com/watch?v=dQw4w9WgXcQ'
SHORTS_URL = 'https://youtube.com/shorts/abcdefghijk'


def api_response(title='Night Market Chef', duration='PT4M13S', description='Street food story'):
    resp = MagicMock()
    resp.status_code = 200
    resp.json.return_value = {'items': [{
        'snippet': {
            'title': title,
            'description': description,
            'channelTitle': 'Food Channel',
            'thumbnails': {'high': {'url': 'https://img/hq.jpg'}},
        },
        'contentDetails': {'duration': duration},
        'statistics': {'viewCount': '1000', 'likeCount': '100'},
    }]}
    return resp


def error_response(status):
    resp = MagicMock()
    resp.status_code = status
    resp.reason = 'Error'
    return resp


@pytest.fixture
def session():
    session = MagicMock()
    with patch('storycraft.youtube.get_http_session', return_value=session):
        yield session


def make_service(**kwargs):
    kwargs.setdefault('api_key', 'yt-key')
    return YouTubeProcessingService(
        retry_service=RetryService(sleep=lambda s: None),
        circuit_breaker=CircuitBreaker(name='youtube-test', failure_threshold=3),
        monitor=ProcessingMonitor(),
        **kwargs,
    )


@pytest.mark.parametrize('url, expected', [
    (VIDEO_URL, 'dQw4w9WgXcQ'),
    ('https://youtu.be/dQw4w9WgXcQ?t=10', 'dQw4w9WgXcQ'),
    ('https://www.youtube.com/watch?feature=share&v=dQw4w9WgXcQ', 'dQw4w9WgXcQ'),
    (SHORTS_URL, 'abcdefghijk'),
    ('https://example.com/video', None),
    ('', None),
])
def test_extract_video_id(url, expected):
    assert extract_video_id(url) == expected


def test_url_helpers():
    assert is_likely_shorts(SHORTS_URL)
    assert not is_likely_shorts(VIDEO_URL)
    assert parse_duration('PT4M13S') == 253
    assert parse_duration('PT1H') == 3600
    assert parse_duration(None) == 0


def test_standard_video_processing_and_cache(session):
    session.get.return_value = api_response()
    service = make_service()

    result = service.process_youtube_content(VIDEO_URL)
    again = service.process_youtube_content(VIDEO_URL)

    assert result.title == 'Night Market Chef'
    assert result.duration == 253
    assert result.thumbnail == 'https://img/hq.jpg'
    assert result.processing_strategy == 'standard_video'
    assert result.metadata['channelTitle'] == 'Food Channel'
    assert again is result
    assert session.get.call_count == 1
    assert session.get.call_args.kwargs['params']['part'] == 'snippet,contentDetails,statistics'


def test_shorts_with_video_analysis(session):
    session.get.return_value = api_response(duration='PT25S')
    analysis = VideoAnalysis(generated_transcript='A chef flips noodles. ' * 12)
    analyzer = MagicMock(return_value=analysis)
    service = make_service(video_analyzer=analyzer)

    result = service.process_youtube_content(SHORTS_URL)

    analyzer.assert_called_once_with('abcdefghijk')
    assert result.content_type == 'shorts'
    assert result.processing_strategy == 'video_analysis_enhanced'
    assert result.transcript == analysis.generated_transcript
    assert result.has_video_analysis
    assert result.video_analysis_quality == 'high'
    assert service.daily_video_analysis_count == 1


def test_long_shorts_skip_video_analysis(session):
    session.get.return_value = api_response(duration='PT90S')
    analyzer = MagicMock()
    service = make_service(video_analyzer=analyzer)

    result = service.process_youtube_content(SHORTS_URL)

    analyzer.assert_not_called()
    assert result.processing_strategy == 'enhanced_shorts'
    assert result.transcript == 'Street food story'
    assert result.video_analysis_quality == 'failed'


def test_quota_error_falls_back_to_url_pattern(session):
    session.get.return_value = error_response(403)
    service = make_service()

    result = service.process_youtube_content(VIDEO_URL)

    assert result.processing_strategy == 'fallback'
    assert result.title == 'YouTube Video Content'
    assert result.warning == FALLBACK_WARNING
    assert result.error is None
    assert session.get.call_count == 2


def test_metadata_only_fallback_after_server_errors(session):
    session.get.side_effect = [error_response(503)] * 3 + [api_response()]
    service = make_service()

    result = service.process_youtube_content(VIDEO_URL)

    assert result.processing_strategy == 'fallback'
    assert result.title == 'Night Market Chef'
    assert session.get.call_args.kwargs['params']['part'] == 'snippet'


def test_missing_api_key_uses_fallback_without_network(session):
    service = make_service(api_key='')

    result = service.process_youtube_content(SHORTS_URL)

    assert result.title == 'YouTube Shorts Content'
    session.get.assert_not_called()
    assert service.get_service_health()['apiKeyConfigured'] is False


def test_invalid_url_returns_error_result(session):
    result = make_service().process_youtube_content('https://example.com/nope')

    assert result.error == 'Unable to extract video ID from URL'
    assert result.processing_strategy == 'error'


def test_open_circuit_stops_network_calls(session):
    session.get.return_value = error_response(500)
    service = make_service()

    for video_id in ('aaaaaaaaaaa', 'bbbbbbbbbbb', 'ccccccccccc'):
        service.process_youtube_content(f'https://youtu.be/{video_id}')
    calls = session.get.call_count

    result = service.process_youtube_content('https://youtu.be/ddddddddddd')

    assert session.get.call_count == calls
    assert result.processing_strategy == 'fallback'
    assert service.get_service_health()['healthy'] is False


def test_viral_potential_scoring():
    metadata = VideoMetadata(id='x', title='3 ways to hack your morning', description='',
                             duration=20, view_count=1000, like_count=100)
    analysis = analyze_shorts_content(metadata)

    potential = calculate_viral_potential(metadata, analysis)

    assert analysis['style'] == 'quick_tips'
    assert len(analysis['hooks']) == 2
    assert potential['score'] == 90
    assert potential['recommendations'] == ['Add clear call-to-action at the end']


def test_shorts_style_detection():
    assert detect_shorts_style(VideoMetadata(id='x', title='My story time', description='')) == 'storytelling'
    assert detect_shorts_style(VideoMetadata(id='x', title='Cats', description='')) == 'entertainment'

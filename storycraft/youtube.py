"""
YouTube Processing Service
Metadata extraction through the YouTube Data API v3, wrapped in retry and a
circuit breaker, with Shorts analysis and tiered fallbacks.
"""

import os
import re
import time
import uuid
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Optional, Dict, Any, List, Callable

from storycraft.cache import IntelligentCache
from storycraft.complexity import VideoAnalysis
from storycraft.http_client import get_http_session
from storycraft.metrics import ProcessingMonitor, processing_monitor
from storycraft.monitoring import record_circuit_state
from storycraft.resilience import RetryService, CircuitBreaker, CircuitOpenError

logger = logging.getLogger(__name__)

YOUTUBE_API_URL = 'https://www.googleapis.com/youtube/v3/videos'

_VIDEO_ID_RE = re.compile(
    r'(?:youtube\.com/watch\?(?:[^#]*&)?v=|youtu\.be/|youtube\.com/embed/|youtube\.com/v/'
    r'|youtube\.com/shorts/|youtube\.com/live/)([A-Za-z0-9_-]{11})(?![A-Za-z0-9_-])'
)
_SHORTS_RE = re.compile(r'youtube\.com/shorts/')
_DURATION_RE = re.compile(r'PT(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?')

_HOOK_PATTERNS = [
    re.compile(r"^(Did you know|You won't believe|This is why|Here's how)", re.IGNORECASE),
    re.compile(r'(secret|hack|trick|tip)', re.IGNORECASE),
    re.compile(r'(\d+\s+ways?|\d+\s+things?)', re.IGNORECASE),
]

_CALLS_TO_ACTION = [
    ('subscribe', 'Subscribe for more'),
    ('follow', 'Follow for updates'),
    ('comment', 'Comment your thoughts'),
    ('share', 'Share with friends'),
]

FALLBACK_WARNING = 'Generated using fallback processing due to API limitations'
MIN_FALLBACK_CONFIDENCE = 0.3

DAILY_VIDEO_ANALYSIS_LIMIT = 50
MAX_ANALYSIS_DURATION = 60


class YouTubeApiError(Exception):
    def __init__(self, message: str, status: int = None, is_retryable: bool = None):
        super().__init__(message)
        self.status = status
        if is_retryable is not None:
            self.is_retryable = is_retryable


# ==============================================================================
# DATA MODELS
# ==============================================================================

@dataclass
class VideoMetadata:
    id: str
    title: str
    description: str
    duration: int = 0
    thumbnail: Optional[str] = None
    published_at: Optional[str] = None
    channel_title: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    view_count: int = 0
    like_count: int = 0


@dataclass
class ProcessingResult:
    id: str
    video_id: Optional[str]
    content_type: str
    title: str
    description: str
    confidence: float
    processing_strategy: str
    duration: Optional[int] = None
    thumbnail: Optional[str] = None
    transcript: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    warning: Optional[str] = None
    error: Optional[str] = None
    shorts_analysis: Optional[Dict[str, Any]] = None
    viral_potential: Optional[Dict[str, Any]] = None
    optimization_hints: Optional[List[str]] = None
    video_analysis: Optional[VideoAnalysis] = None
    has_video_analysis: bool = False
    video_analysis_quality: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'videoId': self.video_id,
            'contentType': self.content_type,
            'title': self.title,
            'description': self.description,
            'duration': self.duration,
            'thumbnail': self.thumbnail,
            'transcript': self.transcript,
            'confidence': self.confidence,
            'processingStrategy': self.processing_strategy,
            'metadata': self.metadata,
            'warning': self.warning,
            'error': self.error,
            'shortsAnalysis': self.shorts_analysis,
            'viralPotential': self.viral_potential,
            'optimizationHints': self.optimization_hints,
            'hasVideoAnalysis': self.has_video_analysis,
            'videoAnalysisQuality': self.video_analysis_quality,
        }


def _generate_id() -> str:
    return f"proc_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


# ==============================================================================
# URL HELPERS
# ==============================================================================

def extract_video_id(url: str) -> Optional[str]:
    if not url:
        return None
    match = _VIDEO_ID_RE.search(url)
    return match.group(1) if match else None


def is_likely_shorts(url: str) -> bool:
    return bool(url and _SHORTS_RE.search(url))


def detect_content_type(url: str) -> str:
    return 'shorts' if is_likely_shorts(url) else 'video'


def parse_duration(duration: Optional[str]) -> int:
    """ISO 8601 duration (PT4M13S) to seconds"""
    match = _DURATION_RE.match(duration or '')
    if not match:
        return 0
    hours, minutes, seconds = (int(part or 0) for part in match.groups())
    return hours * 3600 + minutes * 60 + seconds


# ==============================================================================
# SHORTS ANALYSIS
# ==============================================================================

def detect_shorts_style(metadata: VideoMetadata) -> str:
    title = metadata.title.lower()
    if 'tip' in title or 'hack' in title or 'how to' in title:
        return 'quick_tips'
    if 'story' in title:
        return 'storytelling'
    if 'viral' in title or 'trend' in title:
        return 'viral'
    if 'learn' in title or 'tutorial' in title:
        return 'educational'
    return 'entertainment'


def extract_hooks(metadata: VideoMetadata) -> List[str]:
    hooks = []
    for pattern in _HOOK_PATTERNS:
        match = pattern.search(metadata.title)
        if match:
            hooks.append(match.group(0))
    return hooks


def extract_calls_to_action(metadata: VideoMetadata) -> List[str]:
    description = (metadata.description or '').lower()
    return [label for keyword, label in _CALLS_TO_ACTION if keyword in description]


def predict_engagement(metadata: VideoMetadata) -> float:
    score = 50.0
    if metadata.view_count and metadata.like_count:
        score += metadata.like_count / metadata.view_count * 100
    if '?' in metadata.title:
        score += 10
    if len(metadata.title) < 60:
        score += 5
    if metadata.duration and metadata.duration <= 30:
        score += 15
    elif metadata.duration and metadata.duration <= 45:
        score += 10
    return min(max(score, 0.0), 100.0)


def analyze_shorts_content(metadata: VideoMetadata) -> Dict[str, Any]:
    return {
        'style': detect_shorts_style(metadata),
        'hooks': extract_hooks(metadata),
        'callToAction': extract_calls_to_action(metadata),
        'engagementPrediction': predict_engagement(metadata),
    }


def calculate_viral_potential(metadata: VideoMetadata, analysis: Dict[str, Any]) -> Dict[str, Any]:
    factors = []
    score = 0
    if analysis['engagementPrediction'] > 70:
        factors.append('High engagement prediction')
        score += 30
    if analysis['hooks']:
        factors.append(f"Strong hooks ({len(analysis['hooks'])})")
        score += 20
    if metadata.duration and metadata.duration <= 30:
        factors.append('Optimal duration for virality')
        score += 20
    if analysis['style'] in ('viral', 'quick_tips'):
        factors.append('Viral-friendly content style')
        score += 20

    recommendations = []
    if score < 50:
        recommendations += [
            'Add a strong hook in the first 3 seconds',
            'Keep duration under 30 seconds',
            'Use trending audio or effects',
        ]
    if not analysis['hooks']:
        recommendations.append('Start with a question or surprising statement')
    if not analysis['callToAction']:
        recommendations.append('Add clear call-to-action at the end')

    return {'score': min(score, 100), 'factors': factors, 'recommendations': recommendations}


def shorts_optimization_hints(metadata: VideoMetadata, analysis: Dict[str, Any]) -> List[str]:
    hints = []
    if metadata.duration and metadata.duration > 45:
        hints.append('Consider shortening to under 45 seconds for better retention')
    if len(metadata.title) > 60:
        hints.append('Shorten title for better mobile visibility')
    hints += {
        'quick_tips': ['Number your tips for clarity', 'Use text overlays for key points'],
        'storytelling': ['Start with the climax, then explain', 'Use cliffhangers to increase watch time'],
        'viral': ['Jump on trends within 24-48 hours', 'Add your unique twist to stand out'],
    }.get(analysis['style'], [])
    return hints


def assess_analysis_quality(analysis: Optional[VideoAnalysis]) -> str:
    if analysis is None:
        return 'failed'
    length = len(analysis.generated_transcript or '')
    if length > 200:
        return 'high'
    if length > 100:
        return 'medium'
    return 'low'


# ==============================================================================
# SERVICE
# ==============================================================================

class YouTubeProcessingService:
    """Extracts title/description/duration for a YouTube URL, degrading through
    fallback tiers when the Data API is unavailable."""

    def __init__(self, api_key: str = None, cache: IntelligentCache = None,
                 retry_service: RetryService = None, circuit_breaker: CircuitBreaker = None,
                 monitor: ProcessingMonitor = None,
                 video_analyzer: Callable[[str], VideoAnalysis] = None):
        self.api_key = api_key if api_key is not None else os.getenv('YOUTUBE_API_KEY', '')
        self.cache = cache or IntelligentCache()
        self.retry_service = retry_service or RetryService()
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            name='youtube', failure_threshold=3, reset_timeout=30.0,
            on_state_change=record_circuit_state,
        )
        self.monitor = monitor or processing_monitor
        self.video_analyzer = video_analyzer
        self._analysis_lock = threading.Lock()
        self._analysis_day = date.today()
        self.daily_video_analysis_count = 0

    def process_youtube_content(self, url: str, content_type: str = 'auto') -> ProcessingResult:
        """content_type is 'auto', 'shorts' or 'video'"""
        start_time = time.time()
        detected = detect_content_type(url) if content_type == 'auto' else content_type
        event_id = self.monitor.record_processing_start(url, detected)

        video_id = extract_video_id(url)
        if not video_id:
            self.monitor.record_processing_complete(event_id, 'error', start_time, False)
            return self._error_result('Unable to extract video ID from URL')

        cache_key = IntelligentCache.create_youtube_key(video_id, content_type)
        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.info(f"Cache hit for {video_id}")
            self.monitor.record_processing_complete(event_id, 'cache_hit', start_time, True)
            return cached

        try:
            result = self.circuit_breaker.execute(lambda: self._process_primary(video_id, url, content_type))
        except Exception as e:
            logger.error(f"[ERROR] Primary processing failed for {video_id}, attempting fallback: {e}")
            allow_network = not isinstance(e, CircuitOpenError) and self.circuit_breaker.state != CircuitBreaker.OPEN
            result = self.fallback_processing(video_id, url, e, allow_network=allow_network)
            self.monitor.record_fallback(url, detected, result.processing_strategy)
            self.monitor.record_processing_complete(event_id, result.processing_strategy, start_time, False, e)
            self.cache.set(cache_key, result, 'fallback')
            return result

        self.cache.set(cache_key, result, result.content_type)
        self.monitor.record_processing_complete(event_id, result.processing_strategy, start_time, True)
        return result

    def _process_primary(self, video_id: str, url: str, content_type: str) -> ProcessingResult:
        metadata = self.retry_service.execute(
            lambda: self.fetch_metadata(video_id),
            'YouTube metadata extraction',
            max_attempts=3,
        )
        if content_type == 'shorts' or is_likely_shorts(url):
            return self._shorts_processing(metadata)
        return self._standard_processing(metadata)

    # --------------------------------------------------------------------------
    # Data API
    # --------------------------------------------------------------------------

    def fetch_metadata(self, video_id: str, parts: str = 'snippet,contentDetails,statistics') -> VideoMetadata:
        if not self.api_key:
            raise YouTubeApiError('YouTube API key not configured', is_retryable=False)

        response = get_http_session().get(
            YOUTUBE_API_URL,
            params={'id': video_id, 'key': self.api_key, 'part': parts},
            headers={'User-Agent': 'StoryCraft/1.0'},
            timeout=15,
        )
        if response.status_code == 403:
            raise YouTubeApiError('YouTube API quota exceeded or invalid key', status=403, is_retryable=False)
        if response.status_code >= 400:
            raise YouTubeApiError(f"YouTube API error: {response.status_code} {response.reason}",
                                  status=response.status_code)

        items = response.json().get('items') or []
        if not items:
            raise YouTubeApiError('Video not found or not accessible', status=404, is_retryable=False)

        video = items[0]
        snippet = video.get('snippet') or {}
        thumbnails = snippet.get('thumbnails') or {}
        stats = video.get('statistics') or {}
        return VideoMetadata(
            id=video_id,
            title=snippet.get('title', ''),
            description=snippet.get('description', ''),
            duration=parse_duration((video.get('contentDetails') or {}).get('duration')),
            thumbnail=(thumbnails.get('high') or thumbnails.get('default') or {}).get('url'),
            published_at=snippet.get('publishedAt'),
            channel_title=snippet.get('channelTitle'),
            tags=snippet.get('tags') or [],
            view_count=int(stats.get('viewCount', 0)),
            like_count=int(stats.get('likeCount', 0)),
        )

    # --------------------------------------------------------------------------
    # Processing tiers
    # --------------------------------------------------------------------------

    def _standard_processing(self, metadata: VideoMetadata) -> ProcessingResult:
        return ProcessingResult(
            id=_generate_id(),
            video_id=metadata.id,
            content_type='video',
            title=metadata.title,
            description=metadata.description,
            duration=metadata.duration,
            thumbnail=metadata.thumbnail,
            confidence=0.95,
            processing_strategy='standard_video',
            metadata=self._public_metadata(metadata),
        )

    def _shorts_processing(self, metadata: VideoMetadata) -> ProcessingResult:
        logger.info(f"Starting enhanced Shorts processing for {metadata.id}")
        analysis = analyze_shorts_content(metadata)

        video_analysis = None
        transcript = metadata.description
        if self.video_analyzer and self._reserve_video_analysis(metadata.duration):
            try:
                video_analysis = self.video_analyzer(metadata.id)
            except Exception as e:
                logger.warning(f"[WARN] Video analysis failed for {metadata.id}: {e}")
            if video_analysis and len(video_analysis.generated_transcript or '') > 50:
                transcript = video_analysis.generated_transcript

        has_analysis = video_analysis is not None
        extra = self._public_metadata(metadata)
        extra.update(videoAnalysisUsed=has_analysis, dailyAnalysisCount=self.daily_video_analysis_count)

        return ProcessingResult(
            id=_generate_id(),
            video_id=metadata.id,
            content_type='shorts',
            title=metadata.title,
            description=metadata.description,
            transcript=transcript,
            duration=metadata.duration,
            thumbnail=metadata.thumbnail,
            confidence=0.95 if has_analysis else 0.75,
            processing_strategy='video_analysis_enhanced' if has_analysis else 'enhanced_shorts',
            shorts_analysis=analysis,
            viral_potential=calculate_viral_potential(metadata, analysis),
            optimization_hints=shorts_optimization_hints(metadata, analysis),
            video_analysis=video_analysis,
            has_video_analysis=has_analysis,
            video_analysis_quality=assess_analysis_quality(video_analysis),
            metadata=extra,
        )

    def _reserve_video_analysis(self, duration: int) -> bool:
        with self._analysis_lock:
            today = date.today()
            if today != self._analysis_day:
                self._analysis_day = today
                self.daily_video_analysis_count = 0
            if self.daily_video_analysis_count >= DAILY_VIDEO_ANALYSIS_LIMIT:
                logger.warning(f"[WARN] Daily video analysis limit reached ({DAILY_VIDEO_ANALYSIS_LIMIT})")
                return False
            if duration > MAX_ANALYSIS_DURATION:
                logger.info(f"Video too long for analysis: {duration}s (max {MAX_ANALYSIS_DURATION}s)")
                return False
            self.daily_video_analysis_count += 1
            return True

    @staticmethod
    def _public_metadata(metadata: VideoMetadata) -> Dict[str, Any]:
        return {
            'channelTitle': metadata.channel_title,
            'publishedAt': metadata.published_at,
            'viewCount': metadata.view_count,
            'likeCount': metadata.like_count,
        }

    # --------------------------------------------------------------------------
    # Fallbacks
    # --------------------------------------------------------------------------

    def fallback_processing(self, video_id: Optional[str], url: str, original_error: Exception,
                            allow_network: bool = True) -> ProcessingResult:
        strategies = [
            lambda: self._metadata_only(video_id, url, allow_network),
            lambda: self._url_pattern(url),
            lambda: self._static_template(url),
        ]
        for strategy in strategies:
            try:
                result = strategy()
            except Exception as e:
                logger.warning(f"[WARN] Fallback strategy failed: {e}")
                continue
            if result.confidence > MIN_FALLBACK_CONFIDENCE:
                return replace(result, processing_strategy='fallback', warning=FALLBACK_WARNING)

        return self._emergency(url, original_error)

    def _metadata_only(self, video_id: Optional[str], url: str, allow_network: bool) -> ProcessingResult:
        """Snippet-only lookup, cheaper on quota than the full request"""
        if not video_id:
            raise ValueError('No video ID available')
        if not allow_network:
            raise ValueError('YouTube API circuit is open')

        metadata = self.fetch_metadata(video_id, parts='snippet')
        return ProcessingResult(
            id=_generate_id(),
            video_id=video_id,
            content_type=detect_content_type(url),
            title=metadata.title,
            description=metadata.description,
            thumbnail=metadata.thumbnail,
            confidence=0.5,
            processing_strategy='metadata_only',
        )

    @staticmethod
    def _url_pattern(url: str) -> ProcessingResult:
        shorts = is_likely_shorts(url)
        return ProcessingResult(
            id=_generate_id(),
            video_id=extract_video_id(url),
            content_type='shorts' if shorts else 'video',
            title=f"{'YouTube Shorts' if shorts else 'YouTube Video'} Content",
            description='Content extracted from URL pattern analysis',
            confidence=0.4,
            processing_strategy='url_pattern',
        )

    @staticmethod
    def _static_template(url: str) -> ProcessingResult:
        return ProcessingResult(
            id=_generate_id(),
            video_id=extract_video_id(url),
            content_type='shorts',
            title='YouTube Shorts Content',
            description='Quick-form vertical video content',
            confidence=0.35,
            processing_strategy='static_template',
            shorts_analysis={'style': 'entertainment', 'hooks': [], 'callToAction': [], 'engagementPrediction': 50},
        )

    @staticmethod
    def _emergency(url: str, error: Exception) -> ProcessingResult:
        return ProcessingResult(
            id=_generate_id(),
            video_id=extract_video_id(url),
            content_type='unknown',
            title='Content Unavailable',
            description='Unable to process this content at the moment',
            confidence=0,
            processing_strategy='emergency_fallback',
            error=str(error),
            warning='All processing methods failed. Please try again later.',
        )

    @staticmethod
    def _error_result(message: str) -> ProcessingResult:
        return ProcessingResult(
            id=_generate_id(),
            video_id=None,
            content_type='unknown',
            title='Processing Error',
            description=message,
            confidence=0,
            processing_strategy='error',
            error=message,
            warning='Unable to process the provided URL',
        )

    def get_service_health(self) -> Dict[str, Any]:
        state = self.circuit_breaker.get_state()
        return {
            'healthy': state != CircuitBreaker.OPEN,
            'circuitBreaker': self.circuit_breaker.get_stats(),
            'cache': self.cache.get_stats(),
            'dailyVideoAnalysisCount': self.daily_video_analysis_count,
            'apiKeyConfigured': bool(self.api_key),
        }

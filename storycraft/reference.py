"""
Reference content processing.

Turns a reference source (YouTube video or pasted text) into a story pitch:
quality assessment, complexity analysis, token allocation, adaptive content
shaping, generation through Gemini and JSON repair, with template fallbacks
when the model output cannot be used.
"""

import re
import time
import uuid
import logging
import threading
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Callable

from storycraft.cache import hash_object
from storycraft.complexity import (
    ComplexityLevel, ComplexityMetrics, ContentComplexityAnalyzer, ContentSource, VideoAnalysis,
)
from storycraft.content_processor import AdaptiveContentProcessor
from storycraft.errors import AppError, GeminiServiceError
from storycraft.gemini import GeminiService
from storycraft.json_parser import parse_ai_json_response
from storycraft.monitoring import record_cache_access, record_json_parse, record_pitch_generation
from storycraft.structured_output import StructuredOutputService
from storycraft.token_allocation import TokenAllocation, TokenAllocationManager, is_traditional_chinese
from storycraft.youtube import YouTubeProcessingService, detect_shorts_style, is_likely_shorts, VideoMetadata

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 50000
TRUNCATION_MARKER = '\n\n[Content truncated for processing efficiency]'
TRUNCATION_WARNING = ' Content was truncated due to length for optimal processing.'

CONTENT_CACHE_TTL = 3600
CONTENT_CACHE_MAX_SIZE = 100

MIN_PITCH_LENGTH = 50
SHORTS_MAX_DURATION = 60

WARNING_PARTIAL = 'No transcript available. Generated from video title, description, and available metadata.'
WARNING_LIMITED = ('Limited content available. Generated from basic video metadata only. '
                   'Consider using a video with captions or detailed description.')
WARNING_MINIMAL = ('Very limited information available. Generated from minimal metadata only. '
                   'For better results, try a different video.')
WARNING_EMPTY_RESPONSE = 'Generated using enhanced fallback due to Gemini service unavailability.'
WARNING_MODEL_UNAVAILABLE = 'Generated using fallback method due to Gemini service unavailability.'

QUALITY_CONTEXT = {
    'full': 'You have access to the full transcript/content.',
    'partial': ('You have access to the title, description, and enhanced metadata. '
                'Work with what is available to create the best possible pitch.'),
    'metadata-only': ('You have limited information (basic metadata only). Be creative but stay grounded in '
                      'the available information and focus on what can be inferred from the title and description.'),
}

_LANGUAGE_NAMES = {
    '繁體中文': 'Traditional Chinese',
    '简体中文': 'Simplified Chinese',
    'English': 'English',
    'zh-TW': 'Traditional Chinese',
    'zh-CN': 'Simplified Chinese',
    'en-US': 'English',
}

_LANGUAGE_INSTRUCTIONS = {
    'Traditional Chinese': 'Generate all content in Traditional Chinese (繁體中文)',
    'Simplified Chinese': 'Generate all content in Simplified Chinese (简体中文)',
    'English': 'Generate all content in English',
}

_SHORTS_GUIDANCE = """YOUTUBE SHORTS SPECIFIC REQUIREMENTS:
This is YouTube Shorts content (60 seconds or less) requiring special attention to:
- 極速吸引注意力的開場鉤子 (前3秒決定一切)
- 濃縮但完整的故事弧 (即使在短時間內也要有起承轉合)
- 強烈的視覺衝擊力和行動裝置友好性
- 高分享潛力和話題性元素
- 清晰的行動呼籲或互動誘因"""

_SHORTS_STYLE_GUIDANCE = {
    'quick_tips': '- 專注於清晰的步驟說明和實用價值\n- 確保每個步驟都可以視覺化呈現',
    'storytelling': '- 開頭建立情境衝突，中間展現轉折，結尾提供解決\n- 強調情感共鳴和人物關係',
    'viral': '- 強調話題性或令人驚訝的元素\n- 創造「必須告訴朋友」的迫切感',
    'educational': '- 平衡教育價值與娛樂性\n- 用簡單比喻解釋複雜概念',
    'entertainment': '- 優先考慮娛樂性和觀眾參與度\n- 包含幽默、驚喜或情感高潮點',
}

_COMPLEX_GUIDANCE = """ADDITIONAL GUIDANCE for complex content:
- Break down complex concepts into digestible visual narratives
- Focus on the emotional and human impact of the topic
- Use analogies and metaphors that translate well to visual storytelling"""

_KEYWORD_CLEAN = re.compile(r'[^a-z0-9\s]')


# ==============================================================================
# DATA MODELS
# ==============================================================================

@dataclass
class ReferenceSource:
    """A reference the user wants a pitch for: youtube, audio_upload or text_input"""
    type: str
    id: str = ''
    url: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    duration: Optional[float] = None
    thumbnail: Optional[str] = None
    transcript: Optional[str] = None
    processing_status: str = 'pending'
    error_message: Optional[str] = None
    video_analysis: Optional[VideoAnalysis] = None

    def __post_init__(self):
        if not self.id:
            self.id = f"src_{uuid.uuid4().hex[:12]}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ReferenceSource':
        return cls(
            type=data.get('type') or 'text_input',
            id=data.get('id') or '',
            url=data.get('url'),
            title=data.get('title'),
            description=data.get('description'),
            duration=data.get('duration'),
            thumbnail=data.get('thumbnail'),
            transcript=data.get('transcript'),
            processing_status=data.get('processingStatus') or 'pending',
            error_message=data.get('errorMessage'),
            video_analysis=VideoAnalysis.from_dict(data.get('videoAnalysis')),
        )

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'id': self.id,
            'type': self.type,
            'url': self.url,
            'title': self.title,
            'description': self.description,
            'duration': self.duration,
            'thumbnail': self.thumbnail,
            'transcript': self.transcript,
            'processingStatus': self.processing_status,
            'hasVideoAnalysis': self.video_analysis is not None,
        }
        if self.error_message:
            result['errorMessage'] = self.error_message
        return result

    @property
    def is_shorts(self) -> bool:
        if self.url and is_likely_shorts(self.url):
            return True
        return self.type == 'youtube' and 0 < (self.duration or 0) <= SHORTS_MAX_DURATION


@dataclass
class ReferenceContent:
    source: ReferenceSource
    title: str
    description: str
    transcript: str
    key_topics: List[str]
    sentiment: str
    duration: float
    generated_pitch: str
    content_quality: str
    warning: Optional[str] = None
    structured_pitch: Optional[Dict[str, Any]] = None
    is_structured_output: bool = False
    processing: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"ref_{uuid.uuid4().hex[:12]}")
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'source': self.source.to_dict(),
            'extractedContent': {
                'title': self.title,
                'description': self.description,
                'transcript': self.transcript,
                'keyTopics': self.key_topics,
                'sentiment': self.sentiment,
                'duration': self.duration,
            },
            'generatedPitch': self.generated_pitch,
            'contentQuality': self.content_quality,
            'warning': self.warning,
            'structuredPitch': self.structured_pitch,
            'isStructuredOutput': self.is_structured_output,
            'processing': self.processing,
            'createdAt': self.created_at,
            'updatedAt': self.created_at,
        }


# ==============================================================================
# CONTENT CACHE
# ==============================================================================

class ContentCache:
    """Processed results keyed by source + style + language, oldest evicted first"""

    def __init__(self, ttl: int = CONTENT_CACHE_TTL, max_size: int = CONTENT_CACHE_MAX_SIZE,
                 clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self.max_size = max_size
        self.clock = clock
        self._entries: 'OrderedDict[str, tuple]' = OrderedDict()
        self._lock = threading.Lock()

    @staticmethod
    def make_key(source: ReferenceSource, style: Optional[str], language: Optional[str]) -> str:
        return 'processed_content_' + hash_object({
            'url': source.url,
            'transcript': source.transcript,
            'description': source.description,
            'style': style,
            'language': language,
        })

    def get(self, key: str) -> Optional[ReferenceContent]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self.clock() - entry[1] > self.ttl:
                del self._entries[key]
                entry = None
        record_cache_access('reference', entry is not None)
        return entry[0] if entry else None

    def set(self, key: str, content: ReferenceContent):
        with self._lock:
            self._entries[key] = (content, self.clock())
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self):
        return len(self._entries)


# ==============================================================================
# HELPERS
# ==============================================================================

def get_language_display_name(language: Optional[str]) -> str:
    return _LANGUAGE_NAMES.get(language or '', 'English')


def extract_keywords(content: str, limit: int = 5) -> List[str]:
    """Most frequent words longer than 3 characters"""
    if not content or len(content) < 10:
        return []
    words = [w for w in _KEYWORD_CLEAN.sub(' ', content.lower()).split() if len(w) > 3]
    return [word for word, _ in Counter(words).most_common(limit)]


def assess_content_quality(source: ReferenceSource) -> Dict[str, Any]:
    """Pick prompt content and quality tier from what the source carries"""
    title = source.title or 'Untitled'
    description = source.description or ''

    if source.type == 'text_input':
        return {'content': source.transcript or description, 'quality': 'full', 'warning': None}

    if source.transcript and source.transcript.strip():
        content, quality, warning = source.transcript, 'full', None
    elif len(description) > 200:
        content = f"Title: {title}\n\nDescription and Context: {description}"
        quality, warning = 'partial', WARNING_PARTIAL
    elif len(description) > 50:
        content = f"Title: {title}\n\nDescription: {description}"
        quality, warning = 'metadata-only', WARNING_LIMITED
    else:
        content = f"Title: {title}\n\nDescription: {description or 'No description available'}"
        quality, warning = 'metadata-only', WARNING_MINIMAL

    if len(content) > MAX_CONTENT_LENGTH:
        logger.info(f"Content too long ({len(content)} chars), truncating")
        content = content[:MAX_CONTENT_LENGTH] + TRUNCATION_MARKER
        warning = (warning or '') + TRUNCATION_WARNING

    return {'content': content, 'quality': quality, 'warning': warning}


def create_fallback_pitch(source: ReferenceSource, target_style: Optional[str] = None,
                          target_language: Optional[str] = None) -> str:
    title = source.title or 'Untitled Content'
    description = source.description or ''
    has_description = len(description) > 20
    short_desc = ' '.join(description[:100].split()) if has_description else ''
    ellipsis = '...' if len(short_desc) >= 100 else ''
    style = (target_style or 'video').lower()
    language = get_language_display_name(target_language)

    if language == 'Traditional Chinese':
        if has_description:
            return (f"探索「{title}」背後的故事 - 一個引人入勝的敘事，探討{short_desc}{ellipsis}。"
                    f"這部{style}將內容以視覺化的方式生動呈現。")
        return f"以全新的方式體驗「{title}」。這部{style}將原始內容轉化為引人入勝的視覺故事，捕捉您的注意力並有效傳達訊息。"

    if language == 'Simplified Chinese':
        if has_description:
            return (f"探索「{title}」背后的故事 - 一个引人入胜的叙事，探讨{short_desc}{ellipsis}。"
                    f"这部{style}将内容以视觉化的方式生动呈现。")
        return f"以全新的方式体验「{title}」。这部{style}将原始内容转化为引人入胜的视觉故事，捕捉您的注意力并有效传达信息。"

    if has_description:
        return (f'Discover the story behind "{title}" - a compelling narrative that explores '
                f"{short_desc}{ellipsis}. This {style} brings the content to life in a visually engaging way.")
    return (f'Experience "{title}" in a new way. This {style} transforms the original content into a '
            f"compelling visual story that captures your attention and delivers the message effectively.")


def create_enhanced_fallback_pitch(source: ReferenceSource, target_style: Optional[str] = None,
                                   target_language: Optional[str] = None) -> str:
    """Richer Traditional Chinese template for comedic Shorts, otherwise the plain template"""
    title = source.title or 'Untitled Content'
    comedic = '😂' in title or '太扯' in title
    if source.is_shorts and comedic and get_language_display_name(target_language) == 'Traditional Chinese':
        return (
            f"【驚喜發現】「{title}」- 一個讓人忍不住爆笑的意外發現\n\n"
            "🎬 故事概念：\n"
            "開場：主角無意間發現兩個看似完全不相關的事物，卻有著令人震驚的相似性\n\n"
            "角色設定：\n"
            "- 主角：好奇心旺盛的年輕人，善於觀察生活細節\n"
            "- 背景：現代都市生活場景，充滿驚喜的日常瞬間\n\n"
            "場景描述：\n"
            "1. 開頭3秒：快速剪接展示兩個物品/場景的對比\n"
            "2. 中段：主角的表情變化 - 從困惑到驚訝再到爆笑\n"
            "3. 結尾：加入趣味文字特效和音效，強化視覺衝擊\n\n"
            "視覺風格：\n"
            "- 使用分屏對比手法，突出相似性\n"
            "- 明亮的色調搭配，營造輕鬆愉快氛圍\n"
            "- 快節奏剪接配合節奏感強的背景音樂\n\n"
            "情感曲線：\n"
            "好奇 → 疑惑 → 恍然大悟 → 歡樂分享\n\n"
            "病毒潛力：\n"
            "- 利用視覺錯覺和認知偏差創造話題性\n"
            "- 鼓勵觀眾在評論區分享類似發現\n"
            "- 適合製作系列內容，形成持續關注"
        )
    return create_fallback_pitch(source, target_style, target_language)


def build_pitch_prompt(source: ReferenceSource, content: str, content_quality: str,
                       complexity: ComplexityMetrics, target_style: Optional[str],
                       target_language: Optional[str]) -> str:
    language = get_language_display_name(target_language)
    instruction = _LANGUAGE_INSTRUCTIONS[language]

    prompt = (
        "Create a video pitch based on this content. Respond ONLY with valid JSON, no markdown or extra text.\n"
        f"Title: {source.title or 'Untitled'}\n"
        f"Content: {content}\n"
        f"Type: {'YouTube Shorts (viral, 15-60s)' if source.is_shorts else 'Standard Video'}\n"
        f"{QUALITY_CONTEXT[content_quality]}\n"
        f"Create a detailed story pitch for {language} audience. Even with limited info, be creative and elaborate.\n"
        "JSON format:\n"
        "{\n"
        '  "analysis": {\n'
        '    "keyTopics": ["topic1", "topic2", "topic3"],\n'
        '    "sentiment": "positive",\n'
        '    "coreMessage": "Brief core message",\n'
        '    "targetAudience": "Target demographic"\n'
        "  },\n"
        f'  "generatedPitch": "Detailed video pitch with characters, story, scenes, emotions. '
        f'Minimum 200 words in {language}.",\n'
        '  "rationale": "Why this pitch works"\n'
        "}"
    )
    if target_style:
        prompt += f"\n\nSTYLE: {target_style}"

    if source.is_shorts:
        style = detect_shorts_style(VideoMetadata(id='', title=source.title or '',
                                                  description=source.description or ''))
        prompt += f"\n\n{_SHORTS_GUIDANCE}\n\n{_SHORTS_STYLE_GUIDANCE.get(style, '')}"
    elif complexity.level in (ComplexityLevel.COMPLEX, ComplexityLevel.EXTREME):
        prompt += f"\n\n{_COMPLEX_GUIDANCE}"

    return prompt + f"\n\nIMPORTANT: {instruction}"


# ==============================================================================
# PROCESSOR
# ==============================================================================

class ReferenceProcessor:

    def __init__(self, gemini: GeminiService = None, youtube: YouTubeProcessingService = None,
                 analyzer: ContentComplexityAnalyzer = None, allocator: TokenAllocationManager = None,
                 content_processor: AdaptiveContentProcessor = None, cache: ContentCache = None):
        self.gemini = gemini or GeminiService()
        self.youtube = youtube or YouTubeProcessingService()
        self.analyzer = analyzer or ContentComplexityAnalyzer()
        self.allocator = allocator or TokenAllocationManager()
        self.content_processor = content_processor or AdaptiveContentProcessor()
        self.cache = cache or ContentCache()

    # --------------------------------------------------------------------------
    # Source extraction
    # --------------------------------------------------------------------------

    def extract_youtube_source(self, url: str) -> ReferenceSource:
        """Resolve a YouTube URL; failures come back as an error-status source"""
        content_type = 'shorts' if is_likely_shorts(url) else 'auto'
        result = self.youtube.process_youtube_content(url, content_type)
        if result.error:
            logger.error(f"[ERROR] YouTube extraction failed for {url}: {result.error}")
            return ReferenceSource(type='youtube', url=url, processing_status='error',
                                   error_message=_friendly_youtube_error(result.error))

        return ReferenceSource(
            type='youtube',
            url=url,
            title=result.title,
            description=result.description,
            duration=result.duration,
            thumbnail=result.thumbnail,
            transcript=result.transcript or result.description,
            processing_status='completed',
            video_analysis=result.video_analysis,
        )

    # --------------------------------------------------------------------------
    # Pitch generation
    # --------------------------------------------------------------------------

    def process_reference(self, source: ReferenceSource, target_language: Optional[str] = None,
                          use_structured: bool = False, target_style: Optional[str] = None) -> ReferenceContent:
        start = time.time()
        logger.info(f"Processing reference (type={source.type}, transcript={bool(source.transcript)}, "
                    f"description={len(source.description or '')} chars)")

        cache_key = ContentCache.make_key(source, target_style, target_language)
        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.info("Using cached processed content")
            return cached

        assessed = assess_content_quality(source)
        content, quality, warning = assessed['content'], assessed['quality'], assessed['warning']

        complexity = self.analyzer.analyze(ContentSource(
            title=source.title or '',
            description=source.description or '',
            transcript=source.transcript or '',
            duration=source.duration or 0,
            video_analysis=source.video_analysis,
        ))

        processed = self.content_processor.process_content(ContentSource(
            title=source.title or '',
            description=source.description or '',
            transcript=content if source.type == 'text_input' else (source.transcript or ''),
            duration=source.duration or 0,
            video_analysis=source.video_analysis,
        ), complexity)
        if source.video_analysis is not None or processed.simplification_applied:
            logger.info(AdaptiveContentProcessor.create_processing_summary(processed))
            content = processed.content
            if processed.warning:
                warning = f"{warning} {processed.warning}" if warning else processed.warning

        processing = {
            'complexity': complexity.level.value,
            'complexityScore': complexity.total_score,
            'contentStrategy': processed.strategy,
        }

        try:
            if self._should_use_structured(use_structured, target_language, complexity):
                result = self._generate_structured(source, content, quality, warning, complexity,
                                                   target_language, processing)
                if result is not None:
                    self.cache.set(cache_key, result)
                    record_pitch_generation(source.type, 'structured', True)
                    return result

            result = self._generate_standard(source, content, quality, warning, complexity,
                                             target_style, target_language, processing)
        except GeminiServiceError as e:
            if e.code in ('NO_MODELS_AVAILABLE', 'MODEL_UNAVAILABLE'):
                logger.warning(f"[WARN] Gemini unavailable ({e.code}), using fallback pitch")
                record_pitch_generation(source.type, 'fallback', False)
                return self._fallback_content(
                    source, create_fallback_pitch(source, target_style, target_language),
                    'metadata-only', WARNING_MODEL_UNAVAILABLE,
                    extract_keywords(source.transcript or source.description or ''), 'neutral', processing,
                )
            record_pitch_generation(source.type, 'standard', False)
            raise

        self.cache.set(cache_key, result)
        logger.info(f"[OK] Reference processed in {(time.time() - start) * 1000:.0f}ms "
                    f"(quality={quality}, structured={result.is_structured_output})")
        return result

    @staticmethod
    def _should_use_structured(use_structured: bool, target_language: Optional[str],
                               complexity: ComplexityMetrics) -> bool:
        if not (use_structured and is_traditional_chinese(target_language)):
            return False
        strategy = complexity.recommended_strategy
        return strategy is None or strategy.use_structured_output

    def _generate_structured(self, source: ReferenceSource, content: str, quality: str,
                             warning: Optional[str], complexity: ComplexityMetrics,
                             target_language: Optional[str],
                             processing: Dict[str, Any]) -> Optional[ReferenceContent]:
        logger.info("Using structured output for Traditional Chinese generation")
        allocation = self.allocator.calculate_structured_allocation(complexity, target_language)
        try:
            pitch = StructuredOutputService(self.gemini).generate_structured_pitch(content, quality, allocation)
        except AppError as e:
            logger.warning(f"[WARN] Structured output failed, falling back to standard generation: {e}")
            return None

        processing = dict(processing, allocation=allocation.to_dict())
        return ReferenceContent(
            source=_completed(source),
            title=source.title or 'Untitled',
            description=source.description or '',
            transcript=source.transcript or '',
            key_topics=pitch.tags or [c.get('name', '') for c in pitch.characters],
            sentiment='positive',
            duration=source.duration or 0,
            generated_pitch=pitch.final_pitch,
            content_quality=quality,
            warning=warning,
            structured_pitch=pitch.to_dict(),
            is_structured_output=True,
            processing=processing,
        )

    def _generate_standard(self, source: ReferenceSource, content: str, quality: str,
                           warning: Optional[str], complexity: ComplexityMetrics,
                           target_style: Optional[str], target_language: Optional[str],
                           processing: Dict[str, Any]) -> ReferenceContent:
        allocation = self.allocator.calculate_allocation(complexity, target_language)
        logger.info(f"Token allocation: {TokenAllocationManager.get_allocation_summary(allocation)}")
        prompt = build_pitch_prompt(source, content, quality, complexity, target_style, target_language)

        parsed, allocation = self._generate_and_parse(prompt, allocation)
        processing = dict(processing, allocation=allocation.to_dict())

        if parsed is _EMPTY:
            logger.warning("[WARN] Gemini returned empty response, using enhanced fallback")
            record_pitch_generation(source.type, 'fallback', False)
            return self._fallback_content(
                source, create_enhanced_fallback_pitch(source, target_style, target_language),
                quality, WARNING_EMPTY_RESPONSE, extract_keywords(content), 'positive', processing,
            )

        strategy = 'standard'
        if parsed is None:
            logger.warning("[WARN] All parsing strategies failed, using enhanced fallback pitch")
            strategy = 'fallback'
            parsed = {
                'generatedPitch': create_enhanced_fallback_pitch(source, target_style, target_language),
                'analysis': {
                    'keyTopics': extract_keywords(content),
                    'sentiment': 'positive',
                    'coreMessage': f"Content analysis for: {source.title}",
                    'targetAudience': 'Social media users, entertainment seekers',
                },
                'rationale': 'Generated using enhanced fallback due to JSON parsing failure',
            }

        pitch = parsed.get('generatedPitch') or ''
        if len(pitch) < MIN_PITCH_LENGTH:
            logger.warning("[WARN] Generated pitch too short, enhancing")
            pitch = create_enhanced_fallback_pitch(source, target_style, target_language)
            parsed['rationale'] = (parsed.get('rationale') or '') + ' [Enhanced due to short pitch]'
            strategy = 'fallback'

        analysis = parsed.get('analysis') or {}
        processing['rationale'] = parsed.get('rationale')
        record_pitch_generation(source.type, strategy, strategy == 'standard')
        return ReferenceContent(
            source=_completed(source),
            title=source.title or 'Untitled',
            description=source.description or '',
            transcript=source.transcript or '',
            key_topics=analysis.get('keyTopics') or [],
            sentiment=analysis.get('sentiment') or 'neutral',
            duration=source.duration or 0,
            generated_pitch=pitch,
            content_quality=quality,
            warning=warning,
            processing=processing,
        )

    def _generate_and_parse(self, prompt: str, allocation: TokenAllocation):
        """Returns (payload or None or _EMPTY, allocation used); one shrink-and-retry on MAX_TOKENS"""
        for attempt in (1, 2):
            try:
                result = self.gemini.generate_text(prompt, temperature=allocation.temperature,
                                                   max_tokens=allocation.max_tokens, timeout=allocation.timeout)
            except GeminiServiceError as e:
                truncated = e.code == 'EMPTY_RESPONSE' and e.metadata.get('finishReason') == 'MAX_TOKENS'
                if attempt == 1 and truncated:
                    logger.warning("[WARN] Empty response at token limit, retrying with adjusted allocation")
                    allocation = self._adjust_for_token_limit(allocation, 'MAX_TOKENS', 0)
                    continue
                if e.code in ('EMPTY_RESPONSE', 'INIT_ERROR'):
                    return _EMPTY, allocation
                raise

            parsed = parse_ai_json_response(result.text)
            record_json_parse(parsed.success, len(parsed.repair_attempts) + 1)
            if parsed.success:
                return parsed.data, allocation

            if attempt == 1 and result.hit_token_limit:
                allocation = self._adjust_for_token_limit(allocation, result.finish_reason, result.response_time)
                continue
            logger.warning(f"[WARN] Parse errors: {parsed.repair_attempts}")
            return None, allocation

        return None, allocation

    def _adjust_for_token_limit(self, allocation: TokenAllocation, finish_reason: str,
                                processing_time: float) -> TokenAllocation:
        return self.allocator.adjust_allocation(allocation, {
            'finish_reason': finish_reason,
            'was_token_limit_hit': True,
            'json_truncated': True,
            'processing_time': processing_time,
        })

    @staticmethod
    def _fallback_content(source: ReferenceSource, pitch: str, quality: str, warning: str,
                          key_topics: List[str], sentiment: str,
                          processing: Dict[str, Any]) -> ReferenceContent:
        return ReferenceContent(
            source=_completed(source),
            title=source.title or 'Untitled',
            description=source.description or '',
            transcript=source.transcript or '',
            key_topics=key_topics,
            sentiment=sentiment,
            duration=source.duration or 0,
            generated_pitch=pitch,
            content_quality=quality,
            warning=warning,
            processing=dict(processing, fallback=True),
        )


_EMPTY = object()


def _completed(source: ReferenceSource) -> ReferenceSource:
    source.processing_status = 'completed'
    return source


def _friendly_youtube_error(message: str) -> str:
    lowered = message.lower()
    if 'quota exceeded' in lowered:
        return 'YouTube API quota exceeded. Please try again later.'
    if 'not found' in lowered:
        return 'Video not found or not accessible. Please check the URL.'
    if 'api key' in lowered:
        return 'YouTube API configuration error. Please contact support.'
    if 'temporarily unavailable' in lowered:
        return 'Service temporarily unavailable. Please try again in a few moments.'
    return message

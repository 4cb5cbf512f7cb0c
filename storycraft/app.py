"""
StoryCraft API - Flask application
Story pitch generation from YouTube videos and free text, metered by credits.
"""

import os
import re
import json
import time
import uuid
import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from dataclasses import dataclass
from functools import wraps
from logging.handlers import RotatingFileHandler
from typing import Optional, Dict, Any

import redis
from flask import Flask, request, jsonify, g, current_app, has_request_context
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import HTTPException

from storycraft import database
from storycraft.aspect_ratio import AspectRatio, validate_aspect_ratio
from storycraft.auth import auth_bp, optional_auth, require_auth
from storycraft.cache import CacheManager, hash_object
from storycraft.config import Config, API_VERSION, APP_VERSION
from storycraft.errors import AppError, CacheError, GeminiServiceError, InsufficientCreditsError, ValidationError, \
    get_error_response, log_error
from storycraft.gemini import GeminiService
from storycraft.metrics import metrics_collector, processing_monitor
from storycraft.monitoring import init_monitoring, metrics_bp, record_credits_used, record_error, \
    track_pitch_generation, check_all_services
from storycraft.reference import ReferenceProcessor, ReferenceSource
from storycraft.structured_output import StructuredOutputService
from storycraft.token_allocation import is_traditional_chinese
from storycraft.youtube import YouTubeProcessingService, is_likely_shorts

logger = logging.getLogger(__name__)

API_PREFIX = f'/api/{API_VERSION}'
MIN_TEXT_LENGTH = 10
MIN_PITCH_LENGTH = 50
PITCH_CACHE_TTL = 3600
SOURCE_TYPES = ('youtube', 'audio_upload', 'text_input')


# ==============================================================================
# RESPONSE MODELS
# ==============================================================================

class ResponseStatus(Enum):
    SUCCESS = "success"
    ERROR = "error"
    PARTIAL = "partial"


@dataclass
class ApiResponse:
    """Standardized API response"""
    status: ResponseStatus
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    details: Optional[Any] = None
    request_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {"success": self.status != ResponseStatus.ERROR, "status": self.status.value}
        if self.data is not None:
            result["data"] = self.data
        if self.error:
            result["error"] = self.error
        if self.error_code:
            result["error_code"] = self.error_code
        if self.details is not None:
            result["details"] = self.details
        if self.request_id:
            result["request_id"] = self.request_id
        return result


def success(data: Dict[str, Any], status: int = 200):
    return jsonify(ApiResponse(status=ResponseStatus.SUCCESS, data=data,
                               request_id=g.get('request_id')).to_dict()), status


def failure(message: str, code: str, status: int = 400, details: Any = None):
    return jsonify(ApiResponse(status=ResponseStatus.ERROR, error=message, error_code=code,
                               details=details, request_id=g.get('request_id')).to_dict()), status


# ==============================================================================
# LOGGING SETUP
# ==============================================================================

class RequestIdFilter(logging.Filter):
    def filter(self, record):
        if has_request_context():
            record.request_id = getattr(g, 'request_id', 'no-request-id')
        else:
            record.request_id = 'initialization'
        return True


_logging_configured = False


def setup_logging(log_dir: Optional[str] = None, level: str = 'INFO'):
    """Console + rotating file logging with request IDs; configured once per process"""
    global _logging_configured
    if _logging_configured:
        return
    _logging_configured = True

    handlers = [logging.StreamHandler()]
    if log_dir:
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(
            Path(log_dir) / 'storycraft.log',
            maxBytes=10_000_000,
            backupCount=10,
        ))

    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] - %(message)s')
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(RequestIdFilter())
        root.addHandler(handler)


# ==============================================================================
# IDEMPOTENCY
# ==============================================================================

class IdempotencyStore:
    """Replays responses for repeated Idempotency-Key headers"""

    MAX_MEMORY_ENTRIES = 1000

    def __init__(self, redis_url: str = None, ttl: int = 600):
        self.ttl = ttl
        self._redis = None
        self._mem: Dict[str, tuple] = {}

        if redis_url and redis_url.startswith(('redis://', 'rediss://')):
            try:
                self._redis = redis.from_url(redis_url)
                self._redis.ping()
            except redis.RedisError as e:
                logger.warning(f"[WARN] Idempotency store Redis connection failed, using memory: {e}")
                self._redis = None

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        if self._redis is not None:
            try:
                raw = self._redis.get(f'idem:{key}')
            except redis.RedisError as e:
                logger.error(f"[ERROR] Idempotency get failed: {e}")
                return None
            return json.loads(raw) if raw else None

        entry = self._mem.get(key)
        if entry and entry[0] > time.time():
            return {'status': entry[1], 'headers': entry[2], 'body': entry[3]}
        if entry:
            del self._mem[key]
        return None

    def set(self, key: str, status: int, headers: Dict[str, str], body: str, ttl: int = None):
        ttl = ttl or self.ttl
        if self._redis is not None:
            try:
                self._redis.setex(f'idem:{key}', ttl, json.dumps({'status': status, 'headers': headers, 'body': body}))
            except redis.RedisError as e:
                logger.error(f"[ERROR] Idempotency set failed: {e}")
            return

        self._mem[key] = (time.time() + ttl, status, headers, body)
        if len(self._mem) > self.MAX_MEMORY_ENTRIES:
            now = time.time()
            for k in [k for k, v in self._mem.items() if v[0] < now][:100]:
                del self._mem[k]


def idempotent(ttl: int = 600):
    """Decorator for write endpoints honouring the Idempotency-Key header"""
    def decorator(f):
        @wraps(f)
        def wrapper(*args, **kwargs):
            idem_key = request.headers.get('Idempotency-Key')
            store = current_app.config.get('idem_store')
            if not idem_key or store is None:
                return f(*args, **kwargs)

            user = g.get('current_user')
            owner = f"user:{user['id']}" if user else f"anon:{get_remote_address()}"
            scoped_key = f"{request.path}:{owner}:{idem_key}"
            cached = store.get(scoped_key)
            if cached:
                logger.info(f"[OK] Replaying cached response for key {idem_key[:16]}")
                resp = current_app.response_class(response=cached['body'], status=cached['status'],
                                                  mimetype='application/json')
                resp.headers['Idempotency-Replayed'] = '1'
                for k, v in cached.get('headers', {}).items():
                    resp.headers[k] = v
                return resp

            result = f(*args, **kwargs)
            resp = current_app.make_response(result)
            if resp.status_code in (200, 201, 202):
                headers = {k: v for k, v in resp.headers.items() if k.lower().startswith('x-')}
                store.set(scoped_key, resp.status_code, headers, resp.get_data(as_text=True), ttl)
            return resp
        return wrapper
    return decorator


# ==============================================================================
# FLASK APP FACTORY
# ==============================================================================

def initialize_services(config: Dict[str, Any]) -> Dict[str, Any]:
    """Build outbound service clients from app config"""
    gemini = GeminiService(api_key=config.get('GEMINI_API_KEY', ''), model=config.get('GEMINI_MODEL'))
    youtube = YouTubeProcessingService(api_key=config.get('YOUTUBE_API_KEY', ''))
    services = {
        'gemini': gemini,
        'youtube': youtube,
        'reference': ReferenceProcessor(gemini=gemini, youtube=youtube),
    }
    logger.info(f"[{'OK' if gemini.is_available() else 'WARN'}] Gemini service "
                f"{'configured' if gemini.is_available() else 'not configured, fallbacks only'}")
    logger.info(f"[{'OK' if youtube.api_key else 'WARN'}] YouTube Data API "
                f"{'configured' if youtube.api_key else 'not configured, fallbacks only'}")
    return services


def create_app(config: Optional[Dict[str, Any]] = None) -> Flask:
    """Application factory"""
    app = Flask(__name__)

    app.config.update(Config.as_dict())
    app.config['JSON_SORT_KEYS'] = False
    app.json.sort_keys = False
    app.config['RATELIMIT_HEADERS_ENABLED'] = True
    app.config['start_time'] = time.time()
    if config:
        app.config.update(config)

    setup_logging(None if app.config.get('TESTING') else app.config['LOG_DIR'], app.config['LOG_LEVEL'])

    CORS(app,
         origins=app.config['CORS_ORIGINS'],
         methods=["GET", "POST", "OPTIONS"],
         allow_headers=["Content-Type", "Authorization", "X-Request-ID", "Idempotency-Key"],
         expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining", "Retry-After",
                         "Idempotency-Replayed"],
         max_age=3600)

    redis_url = app.config.get('REDIS_URL') or ''
    limiter = Limiter(
        get_remote_address,
        app=app,
        default_limits=[app.config['RATE_LIMIT_DEFAULT']],
        storage_uri=redis_url or 'memory://',
        headers_enabled=True,
    )

    database.init_database(app.config['DATABASE_PATH'])

    app.config['idem_store'] = IdempotencyStore(redis_url)
    app.config['cache_manager'] = CacheManager(redis_url=redis_url)
    app.config['services'] = initialize_services(app.config)

    init_monitoring(app)
    register_middleware(app)
    register_error_handlers(app)

    app.register_blueprint(auth_bp, url_prefix=API_PREFIX)
    app.register_blueprint(metrics_bp, url_prefix=API_PREFIX)
    register_routes(app, limiter)

    logger.info("=" * 70)
    logger.info("STORYCRAFT API")
    logger.info(f"   Version: {APP_VERSION} (api {API_VERSION})")
    logger.info(f"   Environment: {app.config['FLASK_ENV']}")
    logger.info(f"   Redis: {'Configured' if redis_url else 'Memory (use Redis for production)'}")
    logger.info(f"   Database: {app.config['DATABASE_PATH']}")
    logger.info("=" * 70)
    return app


def register_middleware(app: Flask):

    @app.before_request
    def before_request():
        """Attach request ID and start timer"""
        g.request_id = request.headers.get('X-Request-ID') or uuid.uuid4().hex
        g.request_start = time.time()
        logger.info(f"--> {request.method} {request.path} from {get_remote_address()}")

    @app.after_request
    def after_request(response):
        response.headers['X-Request-ID'] = g.get('request_id', '')
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
        if app.config.get('FLASK_ENV') == 'production':
            response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'

        if 'request_start' in g:
            logger.info(f"<-- {response.status_code} in {time.time() - g.request_start:.3f}s")
        return response


def register_error_handlers(app: Flask):

    @app.errorhandler(AppError)
    def handle_app_error(error: AppError):
        if error.status_code >= 500:
            log_error(error, {'path': request.path})
            record_error(error)
        else:
            logger.warning(f"[WARN] {error.code}: {error.message}")
        body = get_error_response(error)
        body['request_id'] = g.get('request_id')
        return jsonify(body), error.status_code

    @app.errorhandler(400)
    def bad_request(error):
        return failure("Bad request", "BAD_REQUEST", 400)

    @app.errorhandler(404)
    def not_found(error):
        return failure("Resource not found", "NOT_FOUND", 404)

    @app.errorhandler(405)
    def method_not_allowed(error):
        return failure("Method not allowed", "METHOD_NOT_ALLOWED", 405)

    @app.errorhandler(413)
    def payload_too_large(error):
        return failure("Request body too large", "PAYLOAD_TOO_LARGE", 413)

    @app.errorhandler(429)
    def rate_limit_exceeded(error):
        return failure("Rate limit exceeded", "RATE_LIMIT_EXCEEDED", 429)

    @app.errorhandler(Exception)
    def internal_error(error):
        if isinstance(error, HTTPException):
            return failure(error.description or error.name, error.name.upper().replace(' ', '_'), error.code)
        logger.error(f"[ERROR] Unhandled exception on {request.path}: {error}", exc_info=error)
        record_error(error)
        return failure("Internal server error", "INTERNAL_ERROR", 500)


# ==============================================================================
# DECORATORS
# ==============================================================================

def validate_request(*required_fields, **field_types):
    """Request validation decorator"""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            data = request.get_json(silent=True) if request.is_json else None
            if not isinstance(data, dict):
                return failure("Content-Type must be application/json with an object body",
                               "INVALID_CONTENT_TYPE", 400)

            for field in required_fields:
                if data.get(field) is None:
                    return failure(f"Missing required field: {field}", "MISSING_FIELD", 400)

            for field, expected_type in field_types.items():
                value = data.get(field)
                if value is not None and not isinstance(value, expected_type):
                    names = expected_type.__name__ if isinstance(expected_type, type) \
                        else '/'.join(t.__name__ for t in expected_type)
                    return failure(f"Invalid type for field {field}: expected {names}", "INVALID_TYPE", 400)

            g.validated_data = data
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def require_service(service_name: str):
    """Ensure required service is available"""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            service = current_app.config.get('services', {}).get(service_name)
            if not service or not service.is_available():
                return failure(f"{service_name} service is not available", "SERVICE_UNAVAILABLE", 503)
            return f(*args, **kwargs)
        return decorated_function
    return decorator


# ==============================================================================
# HELPERS
# ==============================================================================

def _service(name: str):
    return current_app.config['services'][name]


def _ensure_credits(operation: str):
    """Fail fast with 402 before doing paid work for a signed-in user"""
    user = g.get('current_user')
    if not user:
        return
    cost = database.OPERATION_COSTS[operation]
    available = database.get_user_credits(user['id'])['credits']
    if available < cost:
        raise InsufficientCreditsError(required=cost, available=available)


def _charge(operation: str, description: str) -> Optional[int]:
    user = g.get('current_user')
    if not user:
        return None
    result = database.deduct_credits(user['id'], operation, description=description[:database.MAX_DESCRIPTION_LENGTH])
    record_credits_used(operation, result['deducted'])
    return result['creditsRemaining']


def _cached_pitch(kind: str, params: Dict[str, Any], generate, aspect: Optional[AspectRatio] = None):
    """Memoise (pitch, key_topics, warning) in the cache manager; fallbacks are not cached"""
    cache: CacheManager = current_app.config['cache_manager']
    key = cache.generate_key(f'pitch:{kind}', hash_object(params), aspect)
    cached = cache.get(key)
    if cached:
        return cached['pitch'], cached['keyTopics'], cached.get('warning')

    pitch, key_topics, warning = generate()
    if not warning:
        try:
            cache.set(key, {'pitch': pitch, 'keyTopics': key_topics, 'warning': warning}, PITCH_CACHE_TTL)
        except CacheError as e:
            logger.warning(f"[WARN] Pitch not cached: {e}")
    return pitch, key_topics, warning


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _text_keywords(text: str):
    cleaned = re.sub(r'[^a-zA-Z0-9\s\u4e00-\u9fff]', ' ', text.lower())
    return [word for word in cleaned.split() if len(word) > 2][:5]


def _text_prompt(text: str, language: str, style: str) -> str:
    return (f"Create a compelling video pitch based on this text content.\n\n"
            f"Text Content: {text}\n"
            f"Target Language: {language}\n"
            f"Style: {style}\n\n"
            f"Create an engaging story pitch that captures the essence of the content and would work well "
            f"for video. Focus on creating a narrative structure with clear beginning, middle, and end.\n\n"
            f"Return a detailed pitch in {language} that tells a compelling story based on the provided text.")


def _youtube_prompt(title: str, content: str, is_shorts: bool, language: str) -> str:
    if is_shorts:
        scenes = ("1. 開場吸引 (0-3秒)：強烈的視覺衝擊或問題提出\n"
                  "2. 內容展開 (3-12秒)：核心信息展示和故事發展\n"
                  "3. 高潮轉折 (12-22秒)：關鍵發現或情感高點\n"
                  "4. 呼籲行動 (22-30秒)：結論總結和互動引導")
    else:
        scenes = ("1. 開場場景 (0-15秒)：建立背景和吸引注意\n"
                  "2. 發展場景 (15-60秒)：深入展開核心內容\n"
                  "3. 高潮場景 (60-90秒)：關鍵轉折或重要發現\n"
                  "4. 結尾場景 (90-120秒)：總結要點和行動呼籲")
    return (
        f"你是專業的故事創作專家，需要根據以下YouTube{' Shorts' if is_shorts else ''}影片內容創作完整的視覺故事腳本：\n\n"
        f"影片標題：{title}\n"
        f"影片內容：{content}\n"
        f"影片類型：{'YouTube Shorts (30秒以內)' if is_shorts else 'YouTube 長影片'}\n"
        f"目標語言：{language}\n\n"
        "請創作一個包含以下完整結構的故事腳本：\n\n"
        "**角色設定：**\n"
        "- 主角：年齡、職業、性格特徵、動機目標\n"
        "- 配角或背景人物：相關角色描述\n"
        "- 角色關係：人物間的互動動態\n\n"
        f"**場景描述：**\n{scenes}\n\n"
        "**視覺風格與拍攝手法：**\n"
        "- 攝影技巧：鏡頭運用、構圖方式、景深效果\n"
        "- 色彩搭配：主色調、輔助色彩、情緒營造\n"
        "- 剪接節奏：快慢節奏搭配、轉場效果\n\n"
        "**劇情大綱：**\n"
        "詳細描述故事的起承轉合，包括故事背景設定、主要衝突或問題、解決方案或發現過程、最終結果或啟發\n\n"
        "**情感曲線設計：**\n"
        "描述觀眾從開始到結束的情感變化歷程，如：好奇 → 專注 → 驚喜 → 滿足 → 分享慾望\n\n"
        "**病毒傳播潛力分析：**\n"
        "- 分享動機、互動引導、系列發展、目標群體\n\n"
        "**製作執行建議：**\n"
        "- 拍攝要點、後製重點、發布策略、標題標籤\n\n"
        f"請確保內容豐富詳細，字數約400-800字，適合製作成引人入勝的視頻內容。使用{language}創作。"
    )


def _analysis_content(analysis) -> str:
    parts = [
        analysis.generated_transcript or '',
        ', '.join(f"場景: {s.get('description', '')}" for s in analysis.scene_breakdown),
        ', '.join(f"角色: {c.get('name', '')} - {c.get('description', '')}" for c in analysis.characters),
        ' '.join(d.get('text', '') for d in analysis.dialogues),
    ]
    return '. '.join(p for p in parts if p)


# ==============================================================================
# ROUTES
# ==============================================================================

def register_routes(app: Flask, limiter: Limiter):
    processing_limit = limiter.limit(lambda: current_app.config['RATE_LIMIT_PROCESSING'])

    # --------------------------------------------------------------------------
    # Text -> pitch
    # --------------------------------------------------------------------------

    @app.route(f'{API_PREFIX}/process-text', methods=['POST'])
    @processing_limit
    @optional_auth
    @idempotent()
    @validate_request('text', text=str, targetLanguage=str, style=str, aspectRatio=str)
    @track_pitch_generation('text_input')
    def process_text():
        data = g.validated_data
        text = data['text']
        language = data.get('targetLanguage') or '繁體中文'
        style = data.get('style') or 'tiktok-viral'
        aspect = validate_aspect_ratio(data.get('aspectRatio'))

        if len(text.strip()) < MIN_TEXT_LENGTH:
            return failure(f"Text content must be at least {MIN_TEXT_LENGTH} characters long", "TEXT_TOO_SHORT", 400)

        _ensure_credits('text')
        logger.info(f"Processing text ({len(text)} chars, language={language}, style={style})")

        def generate():
            try:
                result = _service('gemini').generate_text(_text_prompt(text, language, style),
                                                          temperature=0.7, max_tokens=4000)
                if len(result.text.strip()) < MIN_PITCH_LENGTH:
                    raise GeminiServiceError('Generated pitch too short', 'EMPTY_RESPONSE')
                return result.text, _text_keywords(text), None
            except GeminiServiceError as e:
                logger.warning(f"[WARN] Text pitch generation failed, using fallback: {e}")
                if language == '繁體中文':
                    pitch = f"基於您提供的文字內容，這是一個引人入勝的故事。內容探討了{text[:100]}的主題，適合轉化為視覺化的影片內容。"
                else:
                    pitch = ("Based on your provided text content, this is an engaging story that explores themes "
                             "from the original text and can be transformed into compelling visual content.")
                return pitch, ['fallback'], 'Generated using fallback due to AI service limitations'

        pitch, key_topics, warning = _cached_pitch('text', {'text': text, 'language': language, 'style': style},
                                                   generate, aspect)

        stamp = int(time.time() * 1000)
        description = text[:200] + ('...' if len(text) > 200 else '')
        result = {
            'id': f'result_{stamp}',
            'source': {
                'id': f'text_{stamp}',
                'type': 'text_input',
                'title': 'Text Input',
                'description': description,
                'transcript': text,
                'processingStatus': 'completed',
            },
            'extractedContent': {
                'title': 'Text Input',
                'description': description,
                'transcript': text,
                'keyTopics': key_topics,
                'sentiment': 'positive',
                'duration': 0,
            },
            'generatedPitch': pitch,
            'contentQuality': 'full',
            'aspectRatio': aspect.id,
            'isStructuredOutput': False,
            'createdAt': _now(),
            'updatedAt': _now(),
        }
        if warning:
            result['warning'] = warning

        remaining = _charge('text', 'Text pitch generation')
        if remaining is not None:
            result['creditsRemaining'] = remaining
        return success(result)

    # --------------------------------------------------------------------------
    # YouTube -> pitch
    # --------------------------------------------------------------------------

    @app.route(f'{API_PREFIX}/process-youtube', methods=['POST'])
    @processing_limit
    @optional_auth
    @idempotent()
    @validate_request(url=str, targetLanguage=str, useStructuredOutput=bool, aspectRatio=str)
    @track_pitch_generation('youtube')
    def process_youtube():
        data = g.validated_data
        url = (data.get('url') or '').strip()
        language = data.get('targetLanguage') or '繁體中文'
        use_structured = bool(data.get('useStructuredOutput', False))
        aspect = validate_aspect_ratio(data.get('aspectRatio'))

        if not url:
            return failure("YouTube URL is required", "MISSING_FIELD", 400)

        _ensure_credits('youtube')
        processing = _service('youtube').process_youtube_content(url, 'shorts' if is_likely_shorts(url) else 'auto')
        logger.info(f"YouTube processing: strategy={processing.processing_strategy}, "
                    f"confidence={processing.confidence}")

        if processing.error:
            return failure("YouTube processing failed", "YOUTUBE_PROCESSING_FAILED", 400, details=processing.error)
        if not processing.title:
            return failure("Failed to extract YouTube metadata - no title found", "NO_TITLE", 400)

        content = processing.transcript or processing.description or ''
        if len(content) < MIN_PITCH_LENGTH and processing.has_video_analysis and processing.video_analysis:
            analysis_content = _analysis_content(processing.video_analysis)
            if len(analysis_content) > len(content):
                content = analysis_content
        is_shorts = processing.content_type == 'shorts'

        structured_pitch = None
        if use_structured and is_traditional_chinese(language):
            pitch = StructuredOutputService(_service('gemini')).generate_structured_pitch(
                content, 'full' if processing.transcript else 'partial')
            structured_pitch = pitch.to_dict()
            generated, key_topics = pitch.final_pitch, pitch.tags or [c.get('name', '') for c in pitch.characters]
            if pitch.is_fallback and not processing.warning:
                processing.warning = 'Generated using fallback due to AI service limitations'
        else:
            def generate():
                try:
                    result = _service('gemini').generate_text(
                        _youtube_prompt(processing.title, content, is_shorts, language),
                        temperature=0.7, max_tokens=4000)
                    return result.text, [' '.join(processing.title.split(' ')[:3])], None
                except GeminiServiceError as e:
                    logger.error(f"[ERROR] Gemini generation failed: {e}")
                    return (f"基於「{processing.title}」的精彩內容，這是一個引人入勝的故事，值得透過視覺化的方式來呈現給觀眾。",
                            ['fallback'], 'Generated using fallback due to AI service limitations')

            generated, key_topics, gen_warning = _cached_pitch(
                'youtube', {'videoId': processing.video_id, 'url': url, 'language': language}, generate, aspect)
            if gen_warning and not processing.warning:
                processing.warning = gen_warning

        result = {
            'id': f'result_{int(time.time() * 1000)}',
            'source': {
                'id': processing.id,
                'type': 'youtube',
                'url': url,
                'title': processing.title,
                'description': processing.description,
                'transcript': processing.transcript,
                'duration': processing.duration,
                'thumbnail': processing.thumbnail,
                'processingStatus': 'completed',
                'processingStrategy': processing.processing_strategy,
                'hasVideoAnalysis': processing.has_video_analysis,
                'videoAnalysisQuality': processing.video_analysis_quality,
            },
            'extractedContent': {
                'title': processing.title,
                'description': processing.description or '',
                'transcript': processing.transcript or '',
                'keyTopics': key_topics,
                'sentiment': 'positive',
                'duration': processing.duration or 0,
            },
            'generatedPitch': generated,
            'aspectRatio': aspect.id,
            'contentQuality': 'full' if processing.transcript else 'partial',
            'warning': processing.warning,
            'structuredPitch': structured_pitch,
            'isStructuredOutput': structured_pitch is not None,
            'createdAt': _now(),
            'updatedAt': _now(),
        }

        remaining = _charge('youtube', f"YouTube pitch: {processing.title}")
        if remaining is not None:
            result['creditsRemaining'] = remaining
        return success(result)

    # --------------------------------------------------------------------------
    # Full reference pipeline
    # --------------------------------------------------------------------------

    @app.route(f'{API_PREFIX}/process-reference', methods=['POST'])
    @processing_limit
    @optional_auth
    @idempotent()
    @validate_request(url=str, source=dict, targetLanguage=str, targetStyle=str, useStructuredOutput=bool)
    @track_pitch_generation('reference')
    def process_reference():
        data = g.validated_data
        processor: ReferenceProcessor = _service('reference')

        if data.get('source'):
            source = ReferenceSource.from_dict(data['source'])
            if source.type not in SOURCE_TYPES:
                raise ValidationError([{'field': 'source.type',
                                        'message': f"Must be one of: {', '.join(SOURCE_TYPES)}"}])
        elif data.get('url'):
            _ensure_credits('youtube')
            source = processor.extract_youtube_source(data['url'].strip())
            if source.processing_status == 'error':
                return failure("YouTube processing failed", "YOUTUBE_PROCESSING_FAILED", 400,
                               details=source.error_message)
        else:
            raise ValidationError([{'field': 'source', 'message': 'Either source or url is required'}])

        if source.type != 'youtube' and not ((source.transcript or source.description or '').strip()):
            raise ValidationError([{'field': 'source.transcript', 'message': 'Text content is required'}])

        operation = 'youtube' if source.type == 'youtube' else 'text'
        _ensure_credits(operation)

        content = processor.process_reference(
            source,
            target_language=data.get('targetLanguage') or '繁體中文',
            use_structured=bool(data.get('useStructuredOutput', False)),
            target_style=data.get('targetStyle'),
        )
        result = content.to_dict()

        remaining = _charge(operation, f"Reference pitch ({source.type})")
        if remaining is not None:
            result['creditsRemaining'] = remaining
        return success(result)

    # --------------------------------------------------------------------------
    # Credits
    # --------------------------------------------------------------------------

    @app.route(f'{API_PREFIX}/user/credits', methods=['GET'])
    @require_auth
    def get_credits():
        credits = database.get_user_credits(g.current_user['id'])
        return success({'credits': credits['credits'], 'tier': credits['tier'],
                        'totalUsed': credits['totalUsed'], 'totalPurchased': credits['totalPurchased'],
                        'costs': database.OPERATION_COSTS})

    @app.route(f'{API_PREFIX}/user/credits', methods=['POST'])
    @require_auth
    @idempotent()
    @validate_request('operation', 'amount', operation=str, amount=int, description=str)
    def deduct_credits():
        data = g.validated_data
        result = database.deduct_credits(g.current_user['id'], data['operation'], data['amount'],
                                         data.get('description'))
        record_credits_used(data['operation'], result['deducted'])
        return success({'creditsRemaining': result['creditsRemaining'], 'message': result['message']})

    @app.route(f'{API_PREFIX}/user/credits/history', methods=['GET'])
    @require_auth
    def credit_history():
        args = request.args
        try:
            page = int(args.get('page', 1))
            limit = int(args.get('limit', 20))
        except ValueError:
            raise ValidationError([{'field': 'page/limit', 'message': 'Must be integers'}])

        history = database.get_credit_history(
            g.current_user['id'],
            page=page,
            limit=limit,
            transaction_type=args.get('type') or None,
            start_date=args.get('startDate') or None,
            end_date=args.get('endDate') or None,
            include_summary=args.get('includeSummary', '').lower() == 'true',
        )
        return success(history)

    # --------------------------------------------------------------------------
    # Health & monitoring
    # --------------------------------------------------------------------------

    @app.route(f'{API_PREFIX}/health', methods=['GET'])
    @limiter.exempt
    def health_check():
        data = {
            'status': 'healthy',
            'timestamp': _now(),
            'version': APP_VERSION,
            'environment': current_app.config['FLASK_ENV'],
        }
        if request.args.get('detailed') != 'true':
            return success(data)

        collector_health = metrics_collector.get_health_status()
        current = metrics_collector.get_current_metrics()
        db_health = database.check_database_health()
        services = _service('youtube').get_service_health()

        data.update({
            'uptime': time.time() - current_app.config['start_time'],
            'system': {
                'overall': collector_health['status'],
                'services': collector_health['services'],
                'issues': collector_health['issues'],
                'metrics': current,
            },
            'configuration': {
                'gemini': {'apiKey': bool(current_app.config.get('GEMINI_API_KEY')),
                           'model': current_app.config.get('GEMINI_MODEL')},
                'youtube': {'apiKey': bool(current_app.config.get('YOUTUBE_API_KEY'))},
                'redis': bool(current_app.config.get('REDIS_URL')),
                'sentry': bool(current_app.config.get('SENTRY_DSN')),
            },
            'operations': {'youtubeProcessing': processing_monitor.get_stats()},
            'external_services': {
                'gemini': _service('gemini').get_health_status(),
                'youtube': services,
                'database': db_health,
            },
        })

        healthy = (collector_health['status'] == 'healthy' and current['errorRate'] < 10
                   and db_health.get('healthy'))
        data['status'] = 'healthy' if healthy else 'degraded'
        return success(data, 200 if healthy else 503)

    @app.route(f'{API_PREFIX}/monitoring', methods=['GET'])
    @limiter.exempt
    def monitoring():
        youtube: YouTubeProcessingService = _service('youtube')
        return success({
            'timestamp': _now(),
            'metrics': metrics_collector.get_current_metrics(),
            'health': metrics_collector.get_health_status(),
            'processing': processing_monitor.get_stats(),
            'recentEvents': [e.to_dict() for e in processing_monitor.get_recent_events()],
            'cache': {
                'pitches': current_app.config['cache_manager'].get_stats(),
                'youtube': youtube.cache.get_stats(),
                'references': {'entries': len(_service('reference').cache)},
            },
            'circuitBreaker': youtube.circuit_breaker.get_stats(),
            'services': check_all_services(current_app.config),
        })


def main():
    app = create_app()
    port = int(os.getenv('PORT', '5000'))
    app.run(host='0.0.0.0', port=port, debug=app.config['FLASK_ENV'] == 'development')


if __name__ == '__main__':
    main()

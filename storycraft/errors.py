"""
Application error hierarchy for StoryCraft.
Every AppError knows its HTTP status and machine-readable code.
"""

import logging
from typing import Optional, Dict, Any, List

logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code = 500
    code = 'INTERNAL_ERROR'
    is_operational = True

    def __init__(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.metadata = {k: v for k, v in (metadata or {}).items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': type(self).__name__,
            'message': self.message,
            'code': self.code,
            'statusCode': self.status_code,
            'metadata': self.metadata,
        }


# ==============================================================================
# ASPECT RATIO / VALIDATION
# ==============================================================================

class AspectRatioValidationError(AppError):
    status_code = 400
    code = 'ASPECT_RATIO_VALIDATION_ERROR'

    def __init__(self, message: str, aspect_ratio: str = None, metadata: Dict[str, Any] = None):
        super().__init__(message, {'aspectRatio': aspect_ratio, **(metadata or {})})
        self.aspect_ratio = aspect_ratio


class UnsupportedAspectRatioError(AppError):
    status_code = 400
    code = 'UNSUPPORTED_ASPECT_RATIO'

    def __init__(self, aspect_ratio: str, service: str, supported_ratios: List[str], metadata: Dict[str, Any] = None):
        message = (f"Aspect ratio {aspect_ratio} is not supported by {service}. "
                   f"Supported ratios: {', '.join(supported_ratios)}")
        super().__init__(message, {'aspectRatio': aspect_ratio, 'service': service,
                                   'supportedRatios': supported_ratios, **(metadata or {})})


class AspectRatioMismatchError(AppError):
    status_code = 400
    code = 'ASPECT_RATIO_MISMATCH'

    def __init__(self, expected: str, actual: str, context: str = None, metadata: Dict[str, Any] = None):
        where = f" in {context}" if context else ''
        super().__init__(f"Aspect ratio mismatch{where}: expected {expected}, got {actual}",
                         {'expected': expected, 'actual': actual, 'context': context, **(metadata or {})})


class ValidationError(AppError):
    status_code = 400
    code = 'VALIDATION_ERROR'

    def __init__(self, errors: List[Dict[str, Any]], metadata: Dict[str, Any] = None):
        details = ', '.join(f"{e['field']}: {e['message']}" for e in errors)
        super().__init__(f"Validation failed: {details}", {'errors': errors, **(metadata or {})})
        self.errors = errors


# ==============================================================================
# UPSTREAM SERVICES
# ==============================================================================

class _UpstreamError(AppError):
    status_code = 502
    service_label = 'Upstream'

    def __init__(self, message: str, original_error: Exception = None, metadata: Dict[str, Any] = None):
        super().__init__(f"{self.service_label} API error: {message}",
                         {'originalError': str(original_error) if original_error else None, **(metadata or {})})
        self.original_error = original_error


class ImagenError(_UpstreamError):
    code = 'IMAGEN_ERROR'
    service_label = 'Imagen'


class VeoError(_UpstreamError):
    code = 'VEO_ERROR'
    service_label = 'Veo'


class GeminiError(_UpstreamError):
    code = 'GEMINI_ERROR'
    service_label = 'Gemini'


class GeminiServiceError(GeminiError):
    """Gemini failure with a specific reason code (AUTH_ERROR, MODEL_UNAVAILABLE, ...)"""

    def __init__(self, message: str, code: str = 'GEMINI_ERROR', is_retryable: bool = False,
                 original_error: Exception = None, metadata: Dict[str, Any] = None):
        super().__init__(message, original_error, {'reason': code, **(metadata or {})})
        self.code = code
        self.is_retryable = is_retryable


# ==============================================================================
# PROCESSING / RESOURCES
# ==============================================================================

class VideoProcessingError(AppError):
    code = 'VIDEO_PROCESSING_ERROR'

    def __init__(self, message: str, stage: str = None, metadata: Dict[str, Any] = None):
        at = f" at {stage}" if stage else ''
        super().__init__(f"Video processing failed{at}: {message}", {'stage': stage, **(metadata or {})})


class FFmpegError(AppError):
    code = 'FFMPEG_ERROR'

    def __init__(self, message: str, command: str = None, metadata: Dict[str, Any] = None):
        super().__init__(f"FFmpeg error: {message}", {'command': command, **(metadata or {})})


class ResourceNotFoundError(AppError):
    status_code = 404
    code = 'RESOURCE_NOT_FOUND'

    def __init__(self, resource: str, identifier: str = None, metadata: Dict[str, Any] = None):
        suffix = f": {identifier}" if identifier else ''
        super().__init__(f"{resource} not found{suffix}",
                         {'resource': resource, 'identifier': identifier, **(metadata or {})})


class StorageError(AppError):
    code = 'STORAGE_ERROR'

    def __init__(self, message: str, operation: str = None, metadata: Dict[str, Any] = None):
        during = f" during {operation}" if operation else ''
        super().__init__(f"Storage error{during}: {message}", {'operation': operation, **(metadata or {})})


class CacheError(AppError):
    code = 'CACHE_ERROR'

    def __init__(self, message: str, operation: str = None, metadata: Dict[str, Any] = None):
        during = f" during {operation}" if operation else ''
        super().__init__(f"Cache error{during}: {message}", {'operation': operation, **(metadata or {})})
        self.operation = operation


# ==============================================================================
# LIMITS / ACCESS
# ==============================================================================

class RateLimitError(AppError):
    status_code = 429
    code = 'RATE_LIMIT_EXCEEDED'

    def __init__(self, service: str, retry_after: int = None, metadata: Dict[str, Any] = None):
        super().__init__(f"Rate limit exceeded for {service}",
                         {'service': service, 'retryAfter': retry_after, **(metadata or {})})


class CostLimitExceededError(AppError):
    status_code = 402
    code = 'COST_LIMIT_EXCEEDED'

    def __init__(self, estimated_cost: float, max_cost: float, metadata: Dict[str, Any] = None):
        super().__init__(f"Estimated cost ${estimated_cost:.2f} exceeds maximum allowed cost of ${max_cost:.2f}",
                         {'estimatedCost': estimated_cost, 'maxCost': max_cost, **(metadata or {})})


class InsufficientCreditsError(AppError):
    status_code = 402
    code = 'INSUFFICIENT_CREDITS'

    def __init__(self, required: int, available: int):
        super().__init__('Insufficient credits', {'required': required, 'available': available})


class AuthenticationError(AppError):
    status_code = 401
    code = 'AUTHENTICATION_ERROR'

    def __init__(self, message: str = 'Authentication required', metadata: Dict[str, Any] = None):
        super().__init__(message, metadata)


class AuthorizationError(AppError):
    status_code = 403
    code = 'AUTHORIZATION_ERROR'

    def __init__(self, message: str = 'Insufficient permissions', metadata: Dict[str, Any] = None):
        super().__init__(message, metadata)


class OperationTimeoutError(AppError):
    status_code = 408
    code = 'TIMEOUT_ERROR'

    def __init__(self, operation: str, timeout: int, metadata: Dict[str, Any] = None):
        super().__init__(f"Operation {operation} timed out after {timeout}ms",
                         {'operation': operation, 'timeout': timeout, **(metadata or {})})


class ServiceUnavailableError(AppError):
    status_code = 503
    code = 'SERVICE_UNAVAILABLE'

    def __init__(self, service: str, metadata: Dict[str, Any] = None):
        super().__init__(f"Service {service} is currently unavailable", {'service': service, **(metadata or {})})


# ==============================================================================
# HELPERS
# ==============================================================================

def is_app_error(error: BaseException) -> bool:
    return isinstance(error, AppError)


def is_operational_error(error: BaseException) -> bool:
    return isinstance(error, AppError) and error.is_operational


def is_retryable_error(error: BaseException) -> bool:
    """Server-side failures and rate limits are retryable, client errors are not"""
    if isinstance(error, AppError):
        return error.status_code >= 500 or error.code == 'RATE_LIMIT_EXCEEDED'
    return True


def get_error_response(error: BaseException) -> Dict[str, Any]:
    if isinstance(error, AppError):
        return {
            'success': False,
            'error': {
                'code': error.code,
                'message': error.message,
                'statusCode': error.status_code,
                'metadata': error.metadata,
            },
        }
    return {
        'success': False,
        'error': {
            'code': 'INTERNAL_ERROR',
            'message': 'An unexpected error occurred',
            'statusCode': 500,
        },
    }


def log_error(error: BaseException, context: Dict[str, Any] = None):
    details = {'name': type(error).__name__, 'message': str(error), **(context or {})}
    if isinstance(error, AppError):
        details.update(code=error.code, statusCode=error.status_code, metadata=error.metadata)
    logger.error(f"[ERROR] {details}", exc_info=error)

"""
JSON Repair Parser for StoryCraft
Turns unreliable LLM output into a validated pitch payload.

Strategies run in order:
1. Strict parse
2. Basic clean (markdown fences, raw control chars, trailing commas, brace balance)
3. Field extraction and reconstruction
"""

import json
import re
import time
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List

logger = logging.getLogger(__name__)

# ==============================================================================
# CONFIGURATION
# ==============================================================================

MAX_INPUT_LENGTH = 50000
MAX_PITCH_LENGTH = 5000
MIN_PITCH_LENGTH = 50
MAX_RATIONALE_LENGTH = 1000
MAX_BRACE_REPAIRS = 5
MAX_TOPICS = 5
MAX_TOPIC_LENGTH = 100

DEFAULT_SENTIMENT = 'neutral'
DEFAULT_CORE_MESSAGE = 'Content analysis from AI response'
DEFAULT_TARGET_AUDIENCE = 'General audience'
DEFAULT_RATIONALE = 'Extracted from AI response'

_MARKDOWN_FENCE = re.compile(r'```(?:json)?\s*|\s*```')
_TRAILING_COMMAS = re.compile(r',(\s*[}\]])')
_JSON_OBJECT = re.compile(r'\{[\s\S]*\}')

_EXTRACT_PITCH = re.compile(r'"generatedPitch"\s*:\s*"((?:[^"\\]|\\.)*)"', re.DOTALL)
_EXTRACT_TOPICS = re.compile(r'"keyTopics"\s*:\s*\[([\s\S]*?)\]')
_EXTRACT_SENTIMENT = re.compile(r'"sentiment"\s*:\s*"([^"]*)"')
_EXTRACT_CORE_MESSAGE = re.compile(r'"coreMessage"\s*:\s*"((?:[^"\\]|\\.)*)"', re.DOTALL)
_EXTRACT_AUDIENCE = re.compile(r'"targetAudience"\s*:\s*"((?:[^"\\]|\\.)*)"', re.DOTALL)
_EXTRACT_RATIONALE = re.compile(r'"rationale"\s*:\s*"((?:[^"\\]|\\.)*)"', re.DOTALL)

_CONTROL_ESCAPES = {'\n': '\\n', '\r': '\\r', '\t': '\\t'}
_SIMPLE_ESCAPE = re.compile(r'\\(["\\/nrt])')
_ESCAPE_VALUES = {'n': '\n', 'r': '\r', 't': '\t'}


@dataclass
class ParseResult:
    """Outcome of parsing an AI response"""
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    repair_attempts: List[str] = field(default_factory=list)
    original_length: int = 0
    parse_time: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'success': self.success,
            'originalLength': self.original_length,
            'parseTime': self.parse_time,
            'repairAttempts': self.repair_attempts,
        }
        if self.data is not None:
            result['data'] = self.data
        if self.error:
            result['error'] = self.error
        return result


class JsonRepairParser:
    """Stateless parser; a single instance is safe to share across requests"""

    def parse(self, text: Any) -> ParseResult:
        start = time.monotonic()
        attempts: List[str] = []

        def elapsed() -> float:
            return round((time.monotonic() - start) * 1000, 2)

        input_error = self.validate_input(text)
        if input_error:
            return ParseResult(
                success=False,
                error=input_error,
                original_length=len(text) if isinstance(text, str) else 0,
                parse_time=elapsed(),
            )

        # Strategy 1: strict
        try:
            parsed = json.loads(text.strip())
            schema_error = self.validate_schema(parsed)
            if not schema_error:
                return ParseResult(True, data=parsed, original_length=len(text), parse_time=elapsed())
            attempts.append(f"Direct parsing schema error: {schema_error}")
        except (ValueError, RecursionError) as e:
            attempts.append(f"Direct parsing failed: {e}")

        # Strategy 2: basic clean
        try:
            parsed = json.loads(self.basic_clean(text))
            schema_error = self.validate_schema(parsed)
            if not schema_error:
                return ParseResult(True, data=parsed, repair_attempts=attempts,
                                   original_length=len(text), parse_time=elapsed())
            attempts.append(f"Basic cleaning schema error: {schema_error}")
        except (ValueError, RecursionError) as e:
            attempts.append(f"Basic cleaning failed: {e}")

        # Strategy 3: extract and reconstruct
        reconstructed = self.extract_and_reconstruct(text)
        if reconstructed is None:
            attempts.append("Reconstruction failed: no usable generatedPitch found")
        else:
            schema_error = self.validate_schema(reconstructed)
            if not schema_error:
                logger.info(f"[WARN] AI response recovered by reconstruction after {len(attempts)} failed attempts")
                return ParseResult(True, data=reconstructed, repair_attempts=attempts,
                                   original_length=len(text), parse_time=elapsed())
            attempts.append(f"Reconstruction schema error: {schema_error}")

        logger.warning(f"[ERROR] All parsing strategies failed ({len(text)} chars)")
        return ParseResult(
            success=False,
            error='All parsing strategies failed',
            repair_attempts=attempts,
            original_length=len(text),
            parse_time=elapsed(),
        )

    # --------------------------------------------------------------------------

    @staticmethod
    def validate_input(text: Any) -> Optional[str]:
        if not isinstance(text, str) or not text.strip():
            return 'Input must be a non-empty string'
        if len(text) > MAX_INPUT_LENGTH:
            return f'Input exceeds maximum length of {MAX_INPUT_LENGTH} characters'
        if '\x00' in text or '�' in text:
            return 'Input contains invalid characters'
        return None

    @staticmethod
    def basic_clean(text: str) -> str:
        cleaned = _MARKDOWN_FENCE.sub('', text).strip()

        match = _JSON_OBJECT.search(cleaned)
        if match:
            cleaned = match.group(0)

        cleaned = escape_control_chars_in_strings(cleaned)
        cleaned = _TRAILING_COMMAS.sub(r'\1', cleaned).strip()

        missing = cleaned.count('{') - cleaned.count('}')
        if missing > 0:
            cleaned += '}' * min(missing, MAX_BRACE_REPAIRS)
        return cleaned

    @staticmethod
    def extract_and_reconstruct(text: str) -> Optional[Dict[str, Any]]:
        pitch_match = _EXTRACT_PITCH.search(text)
        if not pitch_match or len(pitch_match.group(1)) < MIN_PITCH_LENGTH:
            return None

        key_topics = []
        topics_match = _EXTRACT_TOPICS.search(text)
        if topics_match:
            for raw_topic in topics_match.group(1).split(',')[:MAX_TOPICS]:
                topic = raw_topic.replace('"', '').replace("'", '').strip()
                if 0 < len(topic) < MAX_TOPIC_LENGTH:
                    key_topics.append(topic)

        def captured(pattern, default):
            m = pattern.search(text)
            return unescape(m.group(1)) if m and m.group(1) else default

        return {
            'analysis': {
                'keyTopics': key_topics,
                'sentiment': captured(_EXTRACT_SENTIMENT, DEFAULT_SENTIMENT),
                'coreMessage': captured(_EXTRACT_CORE_MESSAGE, DEFAULT_CORE_MESSAGE),
                'targetAudience': captured(_EXTRACT_AUDIENCE, DEFAULT_TARGET_AUDIENCE),
            },
            'generatedPitch': unescape(pitch_match.group(1))[:MAX_PITCH_LENGTH],
            'rationale': captured(_EXTRACT_RATIONALE, DEFAULT_RATIONALE)[:MAX_RATIONALE_LENGTH],
        }

    @staticmethod
    def validate_schema(data: Any) -> Optional[str]:
        """Return an error string, or None when the payload is valid"""
        if not isinstance(data, dict):
            return 'Data must be an object'

        analysis = data.get('analysis')
        if not isinstance(analysis, dict):
            return 'Missing or invalid analysis object'

        topics = analysis.get('keyTopics')
        if not isinstance(topics, list) or not all(isinstance(t, str) for t in topics):
            return 'keyTopics must be an array of strings'

        for name in ('sentiment', 'coreMessage', 'targetAudience'):
            value = analysis.get(name)
            if not isinstance(value, str) or not value:
                return f'{name} must be a non-empty string'

        pitch = data.get('generatedPitch')
        if not isinstance(pitch, str) or not pitch:
            return 'generatedPitch must be a non-empty string'
        pitch_length = len(pitch.strip())
        if pitch_length < MIN_PITCH_LENGTH:
            return f'generatedPitch must be at least {MIN_PITCH_LENGTH} characters'
        if pitch_length > MAX_PITCH_LENGTH:
            return f'generatedPitch exceeds maximum length of {MAX_PITCH_LENGTH}'

        rationale = data.get('rationale')
        if rationale is not None and (not isinstance(rationale, str) or len(rationale) > MAX_RATIONALE_LENGTH):
            return f'rationale must be a string with max {MAX_RATIONALE_LENGTH} characters'

        return None


# ==============================================================================
# HELPERS
# ==============================================================================

def escape_control_chars_in_strings(text: str) -> str:
    """Escape raw newlines/tabs that appear inside JSON string literals"""
    out = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == '\\':
                escaped = True
            elif ch == '"':
                in_string = False
            elif ch in _CONTROL_ESCAPES:
                out.append(_CONTROL_ESCAPES[ch])
                continue
        elif ch == '"':
            in_string = True
        out.append(ch)
    return ''.join(out)


def unescape(value: str) -> str:
    """Decode simple JSON escapes in a single pass"""
    return _SIMPLE_ESCAPE.sub(lambda m: _ESCAPE_VALUES.get(m.group(1), m.group(1)), value)


json_repair_parser = JsonRepairParser()


def parse_ai_json_response(text: Any) -> ParseResult:
    return json_repair_parser.parse(text)

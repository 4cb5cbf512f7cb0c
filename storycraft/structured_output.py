"""
Structured pitch generation: characters, then scenes, then the final pitch,
each as a small JSON call so truncation only costs one stage.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List

from storycraft.errors import AppError
from storycraft.gemini import GeminiService
from storycraft.token_allocation import TokenAllocation

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2
MIN_PITCH_LENGTH = 50
DEFAULT_MAX_TOKENS = 2000

DEFAULT_FINAL_PITCH = '基於提供的內容，創建了一個引人入勝的故事。'


@dataclass
class StructuredPitch:
    title: str
    genre: str
    target_audience: str
    core_message: str
    characters: List[Dict[str, Any]]
    scenes: List[Dict[str, Any]]
    final_pitch: str
    estimated_duration: int
    tags: List[str] = field(default_factory=list)
    is_fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'title': self.title,
            'genre': self.genre,
            'targetAudience': self.target_audience,
            'coreMessage': self.core_message,
            'characters': self.characters,
            'scenes': self.scenes,
            'finalPitch': self.final_pitch,
            'estimatedDuration': self.estimated_duration,
            'tags': self.tags,
        }


# ==============================================================================
# TRUNCATED JSON RECOVERY
# ==============================================================================

def clean_json_response(response: str) -> str:
    cleaned = response.replace('```json', '').replace('```', '').lstrip('\ufeff')
    start, end = cleaned.find('{'), cleaned.rfind('}')
    if start != -1 and end > start:
        cleaned = cleaned[start:end + 1]
    elif start != -1:
        cleaned = cleaned[start:]
    return cleaned.strip()


def close_open_structures(text: str) -> str:
    """Append the closing quote/brackets/braces a truncated JSON document is missing"""
    stack = []
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
        elif ch == '"':
            in_string = True
        elif ch in '{[':
            stack.append('}' if ch == '{' else ']')
        elif ch in '}]' and stack and stack[-1] == ch:
            stack.pop()

    result = text
    if in_string:
        result += '"'
    result = result.rstrip().rstrip(',')
    if result.endswith(':'):
        result += 'null'
    return result + ''.join(reversed(stack))


def recover_truncated_json(response: str, expected_key: str) -> Dict[str, Any]:
    cleaned = clean_json_response(response or '')
    if not cleaned.endswith('}'):
        cleaned = close_open_structures(cleaned)

    try:
        parsed = json.loads(cleaned)
    except ValueError as e:
        logger.warning(f"[WARN] JSON recovery failed for '{expected_key}', using default: {e}")
        return {expected_key: default_value_for_key(expected_key)}

    if not isinstance(parsed, dict):
        return {expected_key: default_value_for_key(expected_key)}
    if not parsed.get(expected_key):
        parsed[expected_key] = default_value_for_key(expected_key)
    return parsed


def default_value_for_key(key: str) -> Any:
    if key == 'characters':
        return default_characters('')
    if key == 'scenes':
        return default_scenes()
    if key == 'finalPitch':
        return DEFAULT_FINAL_PITCH
    return None


# ==============================================================================
# DEFAULTS
# ==============================================================================

def _content_theme(content: str) -> Optional[str]:
    if any(word in content for word in ('產品', '商品', '亞馬遜')):
        return 'product'
    if any(word in content for word in ('人生', '生活', '時間')):
        return 'life'
    if any(word in content for word in ('搞笑', '爆笑', '😂')):
        return 'comedy'
    return None


_THEMED_CHARACTERS = {
    'product': {'name': '電商達人', 'age': 32, 'gender': '男性', 'voice': '熱情',
                'appearance': '專業裝扮，自信的表情', 'personality': '分析力強，善於發現商機',
                'motivation': '揭露電商秘密，幫助創業者'},
    'life': {'name': '思考者', 'age': 35, 'gender': '女性', 'voice': '溫和',
             'appearance': '知性打扮，深思的表情', 'personality': '理性且富有哲思',
             'motivation': '探索人生的意義與價值'},
    'comedy': {'name': '觀察家', 'age': 25, 'gender': '非二元', 'voice': '活潑',
               'appearance': '休閒裝扮，驚訝的表情', 'personality': '幽默風趣，善於發現生活趣事',
               'motivation': '分享歡笑，傳遞快樂'},
    None: {'name': '探索者', 'age': 30, 'gender': '男性', 'voice': '沉穩',
           'appearance': '現代都市裝扮', 'personality': '好奇且勇於嘗試',
           'motivation': '探索未知，分享發現'},
}

_THEMED_PITCH_INFO = {
    'product': ('電商揭秘故事', '商業紀實', '創業者和電商從業者', ['電商', '創業', '商業']),
    'life': ('人生思考之旅', '哲理短片', '追求人生意義的觀眾', ['人生', '哲理', '思考']),
    'comedy': ('爆笑生活觀察', '喜劇短片', '喜歡輕鬆娛樂的觀眾', ['搞笑', '娛樂', '生活']),
    None: ('精彩故事', '劇情片', '一般觀眾', ['故事']),
}


def default_characters(content: str) -> List[Dict[str, Any]]:
    return [dict(_THEMED_CHARACTERS[_content_theme(content)])]


def default_scenes() -> List[Dict[str, Any]]:
    return [
        {'sceneNumber': 1, 'location': '都市辦公室', 'timeOfDay': '早晨', 'atmosphere': '忙碌而充滿活力',
         'keyAction': '主角自信地進入辦公室', 'emotionalTone': '積極',
         'visualElements': ['現代辦公空間', '晨光', '忙碌的同事'], 'duration': 20},
        {'sceneNumber': 2, 'location': '會議室', 'timeOfDay': '中午', 'atmosphere': '緊張的商業氛圍',
         'keyAction': '重要會議進行中', 'emotionalTone': '緊張',
         'visualElements': ['投影螢幕', '商業圖表', '專注的面孔'], 'duration': 25},
        {'sceneNumber': 3, 'location': '個人辦公桌', 'timeOfDay': '下午', 'atmosphere': '突如其來的寂靜',
         'keyAction': '收到改變一切的消息', 'emotionalTone': '震驚',
         'visualElements': ['電腦螢幕', '空蕩的辦公室', '散落的文件'], 'duration': 20},
    ]


def fallback_pitch_text(characters: List[Dict[str, Any]], scenes: List[Dict[str, Any]],
                        content: str = '') -> str:
    if not characters or not scenes:
        theme = _content_theme(content)
        if theme == 'product':
            return ('這是一個揭露電商產業秘密的故事，專業分析師將帶你深入了解產品背後的利潤真相，'
                    '讓創業者和消費者都能更明智地做出決策。透過數據和實例，揭開商業世界的神秘面紗。')
        if theme == 'life':
            return ('這是一個關於時間與人生的深刻思考，透過獨特的視角重新審視我們的生命旅程，'
                    '引導觀眾思考什麼才是真正重要的事物，以及如何更有意義地度過每一天。')
        if theme == 'comedy':
            return ('這是一個充滿驚喜和歡笑的發現之旅，主角將帶領觀眾發現生活中那些令人噴飯的巧合和趣事，'
                    '用幽默的方式展現日常生活中的荒謬與美好。')
        return '這是一個引人入勝的故事，探索主角在面對挑戰時的成長與變化。透過精彩的情節和角色發展，觀眾將被帶入一段難忘的故事之旅。'

    main = characters[0]
    first, last = scenes[0], scenes[-1]
    return (f"故事講述{main.get('age', 30)}歲的{main.get('name', '主角')}，"
            f"從{first.get('location', '起始場景')}的{first.get('emotionalTone', '關鍵')}時刻開始，"
            f"經歷了一系列挑戰，最終在{last.get('location', '終點')}達到新的境界。"
            f"這是一個關於{main.get('motivation', '成長')}的精彩故事。")


def _total_duration(scenes: List[Dict[str, Any]]) -> int:
    total = 0
    for scene in scenes:
        try:
            total += int(scene.get('duration') or 0)
        except (TypeError, ValueError):
            continue
    return total


def create_fallback_structured_pitch(content: str, characters: List[Dict[str, Any]] = None,
                                     scenes: List[Dict[str, Any]] = None) -> StructuredPitch:
    characters = characters or default_characters(content)
    scenes = scenes or default_scenes()
    title, genre, audience, tags = _THEMED_PITCH_INFO[_content_theme(content)]
    core = content[:100] + '...' if len(content) > 100 else (content or '一個值得分享的故事')
    return StructuredPitch(
        title=title,
        genre=genre,
        target_audience=audience,
        core_message=core,
        characters=characters,
        scenes=scenes,
        final_pitch=fallback_pitch_text(characters, scenes, content),
        estimated_duration=_total_duration(scenes),
        tags=list(tags),
        is_fallback=True,
    )


# ==============================================================================
# SERVICE
# ==============================================================================

class StructuredOutputService:

    def __init__(self, gemini: GeminiService):
        self.gemini = gemini

    def generate_structured_pitch(self, content: str, content_quality: str,
                                  allocation: TokenAllocation = None) -> StructuredPitch:
        logger.info(f"Structured output generation (quality={content_quality}, {len(content)} chars)")

        characters = self._generate_characters(content, allocation)
        scenes = self._generate_scenes(content, characters, allocation)
        pitch = self._compile_final_pitch(content, characters, scenes, allocation)

        if pitch.final_pitch and len(pitch.final_pitch) > MIN_PITCH_LENGTH:
            logger.info("[OK] Structured output generation successful")
            return pitch

        logger.warning("[WARN] Structured output incomplete, using fallback pitch")
        return create_fallback_structured_pitch(content, characters, scenes)

    def _generate_characters(self, content: str, allocation: Optional[TokenAllocation]) -> List[Dict[str, Any]]:
        short = content[:500] + '...' if len(content) > 500 else content
        prompt = (f"分析內容創建1-2個角色。必須是有效JSON：\n"
                  f"內容：{short}\n"
                  f"輸出格式：\n"
                  '{"characters":[{"name":"角色名","age":25,"gender":"男性","voice":"沉穩",'
                  '"appearance":"簡短外貌","personality":"主要性格","motivation":"核心目標"}]}\n'
                  "要求：角色名2-3字，年齡20-50，描述簡潔")
        parsed = self._generate_json(prompt, 'characters', 0.6, allocation)
        characters = parsed.get('characters') if parsed else None
        if isinstance(characters, list) and characters and all(isinstance(c, dict) for c in characters):
            return characters
        return default_characters(short)

    def _generate_scenes(self, content: str, characters: List[Dict[str, Any]],
                         allocation: Optional[TokenAllocation]) -> List[Dict[str, Any]]:
        main = characters[0].get('name', '主角') if characters else '主角'
        short = content[:300] + '...' if len(content) > 300 else content
        prompt = (f"為{main}創建3-4個簡短場景。必須JSON格式：\n"
                  f"內容：{short}\n"
                  f"輸出：\n"
                  '{"scenes":[{"sceneNumber":1,"location":"地點","timeOfDay":"早晨","atmosphere":"氛圍",'
                  '"keyAction":"動作","emotionalTone":"情緒","visualElements":["元素1"],"duration":20}]}\n'
                  "要求：簡潔描述，總共60-90秒")
        parsed = self._generate_json(prompt, 'scenes', 0.6, allocation)
        scenes = parsed.get('scenes') if parsed else None
        if isinstance(scenes, list) and scenes and all(isinstance(s, dict) for s in scenes):
            return scenes
        return default_scenes()

    def _compile_final_pitch(self, content: str, characters: List[Dict[str, Any]],
                             scenes: List[Dict[str, Any]], allocation: Optional[TokenAllocation]) -> StructuredPitch:
        short = content[:200]
        main = characters[0].get('name', '主角') if characters else '主角'
        prompt = (f"創建故事大綱。JSON格式：\n"
                  f"內容：{short}\n"
                  f"主角：{main}\n"
                  f"輸出：\n"
                  '{"title":"標題","genre":"劇情片","targetAudience":"一般觀眾","coreMessage":"核心訊息",'
                  '"finalPitch":"完整故事（150字內，包含主角名字）","tags":["標籤1","標籤2"]}')
        parsed = self._generate_json(prompt, 'finalPitch', 0.7, allocation)
        if parsed is None:
            return create_fallback_structured_pitch(content, characters, scenes)

        final_pitch = parsed.get('finalPitch')
        if not isinstance(final_pitch, str) or final_pitch == DEFAULT_FINAL_PITCH:
            final_pitch = fallback_pitch_text(characters, scenes, content)
        tags = parsed.get('tags')
        return StructuredPitch(
            title=parsed.get('title') or '故事大綱',
            genre=parsed.get('genre') or '劇情片',
            target_audience=parsed.get('targetAudience') or '一般觀眾',
            core_message=parsed.get('coreMessage') or short[:30],
            characters=characters,
            scenes=scenes,
            final_pitch=final_pitch,
            estimated_duration=_total_duration(scenes),
            tags=tags if isinstance(tags, list) and tags else ['故事', '戲劇'],
        )

    def _generate_json(self, prompt: str, key: str, temperature: float,
                       allocation: Optional[TokenAllocation]) -> Optional[Dict[str, Any]]:
        """Up to MAX_ATTEMPTS calls; None when every attempt fails"""
        max_tokens = allocation.max_tokens if allocation else DEFAULT_MAX_TOKENS
        timeout = allocation.timeout if allocation else None
        if allocation:
            temperature = min(temperature, allocation.temperature + 0.1)

        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                result = self.gemini.generate_text(prompt, temperature=temperature,
                                                   max_tokens=max_tokens, timeout=timeout)
            except AppError as e:
                logger.warning(f"[WARN] Structured '{key}' attempt {attempt}/{MAX_ATTEMPTS} failed: {e}")
                continue
            if result.hit_token_limit:
                logger.warning(f"[WARN] Structured '{key}' hit token limit, recovering truncated JSON")
            return recover_truncated_json(result.text, key)

        return None

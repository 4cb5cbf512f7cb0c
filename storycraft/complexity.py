"""
Content Complexity Analyzer
Scores extracted video/text content so downstream token budgets can adapt.
"""

import logging
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional, Dict, Any, List

logger = logging.getLogger(__name__)


class ComplexityLevel(str, Enum):
    SIMPLE = 'simple'
    MODERATE = 'moderate'
    COMPLEX = 'complex'
    EXTREME = 'extreme'


LOW, MEDIUM, HIGH = 'low', 'medium', 'high'

# Conservative budgets to keep MAX_TOKENS finishes rare
COMPLEXITY_THRESHOLDS = {
    ComplexityLevel.SIMPLE: {'max': 30, 'token_budget': 800, 'use_structured_output': True, 'max_processing_time': 20000},
    ComplexityLevel.MODERATE: {'max': 65, 'token_budget': 600, 'use_structured_output': True, 'max_processing_time': 30000},
    ComplexityLevel.COMPLEX: {'max': 85, 'token_budget': 500, 'use_structured_output': False, 'max_processing_time': 45000},
    ComplexityLevel.EXTREME: {'max': 100, 'token_budget': 400, 'use_structured_output': False, 'max_processing_time': 60000},
}

WEIGHTS = {
    'duration': 0.15,
    'characters': 0.25,
    'scenes': 0.20,
    'dialogues': 0.15,
    'transcript': 0.25,
}


# ==============================================================================
# DATA MODELS
# ==============================================================================

@dataclass
class VideoAnalysis:
    """Visual breakdown of a video, as produced by a multimodal model"""
    characters: List[Dict[str, Any]] = field(default_factory=list)
    scene_breakdown: List[Dict[str, Any]] = field(default_factory=list)
    dialogues: List[Dict[str, Any]] = field(default_factory=list)
    visual_elements: List[Any] = field(default_factory=list)
    key_moments: List[Any] = field(default_factory=list)
    generated_transcript: str = ''
    mood: str = ''
    themes: List[str] = field(default_factory=list)
    content_summary: str = ''
    story_structure: Optional[Dict[str, str]] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['VideoAnalysis']:
        if not data:
            return None
        return cls(
            characters=list(data.get('characters') or []),
            scene_breakdown=list(data.get('sceneBreakdown') or data.get('scene_breakdown') or []),
            dialogues=list(data.get('dialogues') or []),
            visual_elements=list(data.get('visualElements') or data.get('visual_elements') or []),
            key_moments=list(data.get('keyMoments') or data.get('key_moments') or []),
            generated_transcript=data.get('generatedTranscript') or data.get('generated_transcript') or '',
            mood=data.get('mood') or '',
            themes=list(data.get('themes') or []),
            content_summary=data.get('contentSummary') or data.get('content_summary') or '',
            story_structure=data.get('storyStructure') or data.get('story_structure'),
        )


@dataclass
class ContentSource:
    """Content extracted from a reference (YouTube video or pasted text)"""
    title: str = ''
    description: str = ''
    transcript: str = ''
    duration: float = 0
    video_analysis: Optional[VideoAnalysis] = None


@dataclass
class RiskFactors:
    token_overflow: str = LOW
    processing_time: str = LOW
    json_truncation: str = LOW


@dataclass
class ProcessingStrategy:
    token_budget: int
    use_structured_output: bool
    simplification_level: str
    fallback_strategy: str
    max_processing_time: int


@dataclass
class ComplexityMetrics:
    total_score: int
    level: ComplexityLevel
    duration: float = 0
    character_count: int = 0
    scene_count: int = 0
    dialogue_count: int = 0
    transcript_length: int = 0
    visual_elements_count: int = 0
    key_moments_count: int = 0
    total_content_length: int = 0
    structured_data_size: int = 0
    risk_factors: RiskFactors = field(default_factory=RiskFactors)
    recommended_strategy: Optional[ProcessingStrategy] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['level'] = self.level.value
        return data


# ==============================================================================
# ANALYZER
# ==============================================================================

class ContentComplexityAnalyzer:
    """Weighted scoring of duration, cast, scenes, dialogue and transcript size"""

    def analyze(self, source: ContentSource) -> ComplexityMetrics:
        analysis = source.video_analysis
        logger.info(f"Analyzing content complexity (video_analysis={analysis is not None}, duration={source.duration})")

        if analysis is None:
            return self._basic_metrics(source)

        transcript_length = max(len(source.transcript or ''), len(analysis.generated_transcript or ''))
        scores = {
            'duration': score_duration(source.duration or 0),
            'characters': score_characters(len(analysis.characters)),
            'scenes': score_scenes(len(analysis.scene_breakdown)),
            'dialogues': score_dialogues(len(analysis.dialogues)),
            'transcript': score_transcript(transcript_length),
        }
        total = _clamp_score(sum(scores[k] * WEIGHTS[k] for k in WEIGHTS))

        level = complexity_level(total)
        content_length = self._total_content_length(source, analysis)
        structured_size = self._structured_data_size(analysis)
        risks = RiskFactors(
            token_overflow=_risk(total, content_length > 3000, content_length > 2000),
            processing_time=_risk(total, (source.duration or 0) > 60, (source.duration or 0) > 45),
            json_truncation=_risk(total, structured_size > 2000, structured_size > 1500),
        )

        metrics = ComplexityMetrics(
            total_score=round(total),
            level=level,
            duration=source.duration or 0,
            character_count=len(analysis.characters),
            scene_count=len(analysis.scene_breakdown),
            dialogue_count=len(analysis.dialogues),
            transcript_length=transcript_length,
            visual_elements_count=len(analysis.visual_elements),
            key_moments_count=len(analysis.key_moments),
            total_content_length=content_length,
            structured_data_size=structured_size,
            risk_factors=risks,
            recommended_strategy=self.processing_strategy(level, risks),
        )
        logger.info(f"[OK] Complexity {metrics.level.value} (score={metrics.total_score}, "
                    f"budget={metrics.recommended_strategy.token_budget})")
        return metrics

    def _basic_metrics(self, source: ContentSource) -> ComplexityMetrics:
        duration = source.duration or 0
        transcript_length = len(source.transcript or '')
        total = _clamp_score(score_duration(duration) * 0.4 + score_transcript(transcript_length) * 0.6)
        level = complexity_level(total)
        risks = RiskFactors(processing_time=MEDIUM if duration > 45 else LOW)

        return ComplexityMetrics(
            total_score=round(total),
            level=level,
            duration=duration,
            transcript_length=transcript_length,
            total_content_length=transcript_length + len(source.description or ''),
            risk_factors=risks,
            recommended_strategy=self.processing_strategy(level, risks),
        )

    @staticmethod
    def processing_strategy(level: ComplexityLevel, risks: RiskFactors) -> ProcessingStrategy:
        base = COMPLEXITY_THRESHOLDS[level]

        budget = base['token_budget']
        if risks.token_overflow == HIGH:
            budget *= 0.7
        elif risks.token_overflow == MEDIUM:
            budget *= 0.85

        if level == ComplexityLevel.EXTREME or risks.token_overflow == HIGH:
            simplification = 'aggressive'
        elif level == ComplexityLevel.COMPLEX or risks.processing_time == HIGH:
            simplification = 'moderate'
        else:
            simplification = 'none'

        fallback = {ComplexityLevel.EXTREME: 'minimal', ComplexityLevel.COMPLEX: 'simplified'}.get(level, 'standard')

        return ProcessingStrategy(
            token_budget=round(budget),
            use_structured_output=base['use_structured_output'] and risks.json_truncation == LOW,
            simplification_level=simplification,
            fallback_strategy=fallback,
            max_processing_time=base['max_processing_time'],
        )

    @staticmethod
    def _total_content_length(source: ContentSource, analysis: VideoAnalysis) -> int:
        return (len(source.transcript or '')
                + len(source.description or '')
                + len(analysis.generated_transcript or '')
                + len(analysis.characters) * 100
                + len(analysis.scene_breakdown) * 80
                + len(analysis.dialogues) * 50)

    @staticmethod
    def _structured_data_size(analysis: VideoAnalysis) -> int:
        """Estimated JSON size of the structured breakdown"""
        return (len(analysis.characters) * 200
                + len(analysis.scene_breakdown) * 150
                + len(analysis.dialogues) * 100
                + len(analysis.visual_elements) * 80
                + len(analysis.key_moments) * 60)

    @staticmethod
    def get_processing_recommendations(metrics: ComplexityMetrics) -> List[str]:
        tips = []
        risks = metrics.risk_factors
        if risks.token_overflow == HIGH:
            tips.append('Reduce prompt content: token overflow risk is high')
        if risks.json_truncation != LOW:
            tips.append('Prefer plain-text output over structured JSON')
        if risks.processing_time == HIGH:
            tips.append('Extend request timeout for long content')
        if metrics.level in (ComplexityLevel.COMPLEX, ComplexityLevel.EXTREME):
            tips.append(f'Apply {metrics.recommended_strategy.simplification_level} content simplification')
        if not tips:
            tips.append('Content is within normal limits')
        return tips

    @staticmethod
    def should_use_fallback(metrics: ComplexityMetrics) -> bool:
        risks = metrics.risk_factors
        return (metrics.level == ComplexityLevel.EXTREME
                or (risks.token_overflow == HIGH and risks.json_truncation == HIGH))


# ==============================================================================
# SCORING
# ==============================================================================

def score_duration(seconds: float) -> int:
    if seconds <= 15:
        return 0
    if seconds <= 30:
        return 25
    if seconds <= 45:
        return 50
    if seconds <= 60:
        return 75
    return 100


def score_characters(count: int) -> int:
    if count == 0:
        return 0
    if count == 1:
        return 10
    if count <= 3:
        return 30
    if count <= 5:
        return 60
    return 100


def score_scenes(count: int) -> int:
    if count <= 2:
        return 0
    if count <= 5:
        return 25
    if count <= 8:
        return 50
    if count <= 12:
        return 75
    return 100


def score_dialogues(count: int) -> int:
    if count == 0:
        return 0
    if count <= 2:
        return 20
    if count <= 5:
        return 40
    if count <= 10:
        return 70
    return 100


def score_transcript(length: int) -> int:
    if length < 100:
        return 0
    if length < 300:
        return 20
    if length < 600:
        return 50
    if length < 1000:
        return 80
    return 100


def complexity_level(score: float) -> ComplexityLevel:
    for level in (ComplexityLevel.SIMPLE, ComplexityLevel.MODERATE, ComplexityLevel.COMPLEX):
        if score <= COMPLEXITY_THRESHOLDS[level]['max']:
            return level
    return ComplexityLevel.EXTREME


def _risk(score: float, high_condition: bool, medium_condition: bool) -> str:
    if score >= 80 or high_condition:
        return HIGH
    if score >= 60 or medium_condition:
        return MEDIUM
    return LOW


def _clamp_score(score: float) -> float:
    return max(0.0, min(100.0, score))


content_complexity_analyzer = ContentComplexityAnalyzer()

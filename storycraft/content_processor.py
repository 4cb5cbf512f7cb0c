"""
Adaptive Content Processor
Builds the prompt content for a source, trimmed to fit the complexity budget.
"""

import math
import logging
from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any

from storycraft.complexity import ComplexityLevel, ComplexityMetrics, ContentSource, VideoAnalysis

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN_BUDGET = 3
CHARS_PER_TOKEN_ESTIMATE = 2.5

LIGHT_MARKER = '\n\n[Content optimized for processing]'
SMART_MARKER = '\n\n[Content simplified due to complexity]'
AGGRESSIVE_MARKER = '\n[Heavily simplified]'

WARNING_MODERATE = 'Content lightly optimized for processing efficiency.'
WARNING_COMPLEX = 'Content simplified due to complexity for optimal processing.'
WARNING_EXTREME = 'Content heavily simplified due to extreme complexity.'


@dataclass
class ProcessedContent:
    content: str
    content_quality: str
    strategy: str
    token_estimate: int
    original_length: int
    simplification_applied: bool = False
    truncated: bool = False
    warning: Optional[str] = None

    @property
    def processed_length(self) -> int:
        return len(self.content)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['processed_length'] = self.processed_length
        return data


def estimate_tokens(content: str) -> int:
    return math.ceil(len(content) / CHARS_PER_TOKEN_ESTIMATE)


class AdaptiveContentProcessor:

    def process_content(self, source: ContentSource, complexity: ComplexityMetrics) -> ProcessedContent:
        budget = complexity.recommended_strategy.token_budget
        logger.info(f"Adaptive processing: level={complexity.level.value}, score={complexity.total_score}, budget={budget}")

        handler = {
            ComplexityLevel.SIMPLE: self._process_simple,
            ComplexityLevel.MODERATE: self._process_moderate,
            ComplexityLevel.COMPLEX: self._process_complex,
            ComplexityLevel.EXTREME: self._process_extreme,
        }.get(complexity.level, self._process_simple)
        return handler(source, budget)

    # --------------------------------------------------------------------------

    def _process_simple(self, source: ContentSource, budget: int) -> ProcessedContent:
        analysis = source.video_analysis
        if analysis:
            content = self._full_analysis_content(source, analysis)
        elif (source.transcript or '').strip():
            content = self._transcript_content(source)
        else:
            content = self._basic_content(source)

        quality = 'full' if analysis or source.transcript else 'partial'
        return ProcessedContent(
            content=content,
            content_quality=quality,
            strategy='simple_full_content',
            token_estimate=estimate_tokens(content),
            original_length=len(content),
        )

    def _process_moderate(self, source: ContentSource, budget: int) -> ProcessedContent:
        analysis = source.video_analysis
        if analysis:
            content = self._optimized_analysis_content(source, analysis)
        elif source.transcript:
            content = self._transcript_content(source)
        else:
            content = self._basic_content(source)

        original_length = len(content)
        warning = None
        if estimate_tokens(content) > budget:
            content = light_truncation(content, budget)
            warning = WARNING_MODERATE

        return ProcessedContent(
            content=content,
            content_quality='full',
            strategy='moderate_optimized_content',
            token_estimate=estimate_tokens(content),
            original_length=original_length,
            simplification_applied=warning is not None,
            truncated=len(content) != original_length,
            warning=warning,
        )

    def _process_complex(self, source: ContentSource, budget: int) -> ProcessedContent:
        analysis = source.video_analysis
        if analysis:
            content = self._simplified_analysis_content(source, analysis)
        elif source.transcript:
            content = self._transcript_content(source, simplified=True)
        else:
            content = self._basic_content(source)

        original_length = len(content)
        content = smart_truncation(content, budget)
        return ProcessedContent(
            content=content,
            content_quality='partial',
            strategy='complex_simplified_content',
            token_estimate=estimate_tokens(content),
            original_length=original_length,
            simplification_applied=True,
            truncated=len(content) != original_length,
            warning=WARNING_COMPLEX,
        )

    def _process_extreme(self, source: ContentSource, budget: int) -> ProcessedContent:
        content = f"Title: {source.title or 'Untitled'}\nBrief: {(source.description or '')[:100]}"
        original_length = len(content)
        content = aggressive_truncation(content, budget)
        return ProcessedContent(
            content=content,
            content_quality='metadata-only',
            strategy='extreme_minimal_content',
            token_estimate=estimate_tokens(content),
            original_length=original_length,
            simplification_applied=True,
            truncated=len(content) != original_length,
            warning=WARNING_EXTREME,
        )

    # --------------------------------------------------------------------------
    # Content builders
    # --------------------------------------------------------------------------

    @staticmethod
    def _full_analysis_content(source: ContentSource, analysis: VideoAnalysis) -> str:
        lines = [f"Title: {source.title or 'Untitled'}", '']
        if analysis.generated_transcript:
            lines += [f"Generated Transcript: {analysis.generated_transcript}", '']
        if analysis.characters:
            lines.append('Characters:')
            for i, char in enumerate(analysis.characters, 1):
                lines.append(f"{i}. {char.get('name', '')}: {char.get('description', '')} ({char.get('role', '')})")
                if char.get('characteristics'):
                    lines.append(f"   - Characteristics: {char['characteristics']}")
            lines.append('')
        if analysis.scene_breakdown:
            lines.append('Scene Breakdown:')
            for i, scene in enumerate(analysis.scene_breakdown, 1):
                lines.append(f"{i}. {scene.get('description', '')} ({scene.get('startTime', 0)}s-{scene.get('endTime', 0)}s)")
                if scene.get('setting'):
                    lines.append(f"   - Setting: {scene['setting']}")
                if scene.get('actions'):
                    lines.append(f"   - Actions: {', '.join(scene['actions'])}")
            lines.append('')
        story = analysis.story_structure
        if story:
            lines += [
                'Story Structure:',
                f"- Hook: {story.get('hook', '')}",
                f"- Development: {story.get('development', '')}",
                f"- Climax: {story.get('climax', '')}",
                f"- Resolution: {story.get('resolution', '')}",
                '',
            ]
        if analysis.dialogues:
            lines.append('Key Dialogues:')
            for i, dialogue in enumerate(analysis.dialogues, 1):
                lines.append(f"{i}. {dialogue.get('speaker', '')}: \"{dialogue.get('text', '')}\" ({dialogue.get('emotion', '')})")
            lines.append('')
        lines.append(f"Mood: {analysis.mood}")
        if analysis.themes:
            lines.append(f"Themes: {', '.join(analysis.themes)}")
        lines += ['', f"Content Summary: {analysis.content_summary}"]
        return '\n'.join(lines)

    @staticmethod
    def _optimized_analysis_content(source: ContentSource, analysis: VideoAnalysis) -> str:
        lines = [f"Title: {source.title or 'Untitled'}", '']
        if analysis.generated_transcript:
            lines += [f"Generated Transcript: {_clip(analysis.generated_transcript, 400)}", '']
        if analysis.characters:
            lines.append('Main Characters:')
            for i, char in enumerate(analysis.characters[:5], 1):
                lines.append(f"{i}. {char.get('name', '')}: {char.get('description', '')} ({char.get('role', '')})")
            lines.append('')
        if analysis.scene_breakdown:
            lines.append('Key Scenes:')
            for i, scene in enumerate(analysis.scene_breakdown[:8], 1):
                lines.append(f"{i}. {scene.get('description', '')} ({scene.get('startTime', 0)}s-{scene.get('endTime', 0)}s)")
            lines.append('')
        story = analysis.story_structure
        if story:
            lines += [f"Story: {story.get('hook', '')} → {story.get('climax', '')} → {story.get('resolution', '')}", '']
        lines.append(f"Mood: {analysis.mood}")
        lines.append(f"Summary: {analysis.content_summary}")
        return '\n'.join(lines)

    @staticmethod
    def _simplified_analysis_content(source: ContentSource, analysis: VideoAnalysis) -> str:
        lines = [f"Title: {source.title or 'Untitled'}", '']
        if analysis.generated_transcript:
            lines += [f"Content: {_clip(analysis.generated_transcript, 200)}", '']
        if analysis.characters:
            names = ', '.join(f"{c.get('name', '')} ({c.get('role', '')})" for c in analysis.characters[:3])
            lines += [f"Characters: {names}", '']
        if analysis.scene_breakdown:
            scenes = '; '.join(s.get('description', '') for s in analysis.scene_breakdown[:4])
            lines += [f"Scenes: {scenes}", '']
        lines.append(f"Mood: {analysis.mood}")
        lines.append(f"Summary: {analysis.content_summary}")
        return '\n'.join(lines)

    @staticmethod
    def _transcript_content(source: ContentSource, simplified: bool = False) -> str:
        transcript = source.transcript or ''
        if simplified:
            transcript = _clip(transcript, 800)
        return f"Title: {source.title or 'Untitled'}\n\nContent: {transcript}"

    @staticmethod
    def _basic_content(source: ContentSource) -> str:
        return (f"Title: {source.title or 'Untitled'}\n\n"
                f"Description: {source.description or 'No description available'}")

    @staticmethod
    def create_processing_summary(result: ProcessedContent) -> str:
        summary = (f"{result.strategy}: {result.original_length} -> {result.processed_length} chars "
                   f"(~{result.token_estimate} tokens, quality={result.content_quality})")
        if result.warning:
            summary += f" - {result.warning}"
        return summary


# ==============================================================================
# TRUNCATION
# ==============================================================================

def light_truncation(content: str, target_tokens: int) -> str:
    limit = target_tokens * CHARS_PER_TOKEN_BUDGET
    if len(content) <= limit:
        return content
    return content[:limit] + LIGHT_MARKER


def smart_truncation(content: str, target_tokens: int) -> str:
    """Cut at a paragraph boundary when one falls in the last 30% of the limit"""
    limit = target_tokens * CHARS_PER_TOKEN_BUDGET
    if len(content) <= limit:
        return content
    truncated = content[:limit]
    boundary = truncated.rfind('\n\n')
    if boundary > limit * 0.7:
        return truncated[:boundary] + SMART_MARKER
    return truncated + SMART_MARKER


def aggressive_truncation(content: str, target_tokens: int) -> str:
    limit = target_tokens * CHARS_PER_TOKEN_BUDGET
    if len(content) <= limit:
        return content
    return content[:limit] + AGGRESSIVE_MARKER


def _clip(text: str, limit: int) -> str:
    return text[:limit] + '...' if len(text) > limit else text


adaptive_content_processor = AdaptiveContentProcessor()

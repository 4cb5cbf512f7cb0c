"""
Token Allocation Manager
Maps content complexity and output mode to LLM generation parameters.
"""

import logging
from dataclasses import dataclass, replace, asdict
from typing import Optional, Dict, Any

from storycraft.complexity import (
    ComplexityLevel, ComplexityMetrics, COMPLEXITY_THRESHOLDS, HIGH, MEDIUM,
)

logger = logging.getLogger(__name__)

TRADITIONAL_CHINESE = ('繁體中文', 'Traditional Chinese', 'zh-TW')

MIN_TIMEOUT_MS = 15000
MAX_TIMEOUT_MS = 120000
SLOW_PROCESSING_MS = 45000

TEMPERATURE_BY_LEVEL = {
    ComplexityLevel.SIMPLE: 0.8,
    ComplexityLevel.MODERATE: 0.6,
    ComplexityLevel.COMPLEX: 0.4,
    ComplexityLevel.EXTREME: 0.2,
}

# (default, Traditional Chinese) caps for structured output
STRUCTURED_CAPS = {
    ComplexityLevel.SIMPLE: (400, 800),
    ComplexityLevel.MODERATE: (350, 700),
    ComplexityLevel.COMPLEX: (300, 600),
    ComplexityLevel.EXTREME: (250, 500),
}

_RISK_MULTIPLIERS = (
    ('token_overflow', 'token overflow', {HIGH: 0.6, MEDIUM: 0.75}),
    ('processing_time', 'processing time', {HIGH: 0.8, MEDIUM: 0.9}),
    ('json_truncation', 'JSON truncation', {HIGH: 0.7, MEDIUM: 0.85}),
)


def is_traditional_chinese(language: Optional[str]) -> bool:
    return language in TRADITIONAL_CHINESE


@dataclass
class TokenAllocation:
    max_tokens: int
    temperature: float
    timeout: int
    reasoning: str
    risk_adjustment: str
    fallback_strategy: str = 'standard'
    is_structured_output: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class TokenAllocationManager:

    def calculate_allocation(self, complexity: ComplexityMetrics,
                             target_language: Optional[str] = None) -> TokenAllocation:
        """Standard (free-form) output allocation"""
        level_budget = COMPLEXITY_THRESHOLDS[complexity.level]['token_budget']
        base = level_budget
        if is_traditional_chinese(target_language):
            base = round(base * 1.5)
            logger.info(f"Increasing token allocation for Traditional Chinese: {level_budget} -> {base}")

        adjusted = float(base)
        adjustments = []
        for attr, label, multipliers in _RISK_MULTIPLIERS:
            risk = getattr(complexity.risk_factors, attr)
            if risk in multipliers:
                adjusted *= multipliers[risk]
                percent = round((1 - multipliers[risk]) * 100)
                adjustments.append(f"{risk.capitalize()} {label} risk: -{percent}%")

        minimum = 800 if is_traditional_chinese(target_language) else 500
        final = max(round(adjusted), minimum)

        strategy = complexity.recommended_strategy
        allocation = TokenAllocation(
            max_tokens=final,
            temperature=TEMPERATURE_BY_LEVEL.get(complexity.level, 0.7),
            timeout=self._timeout(complexity),
            reasoning=self._reasoning(complexity, base, final),
            risk_adjustment='; '.join(adjustments) if adjustments else 'No adjustments needed',
            fallback_strategy=strategy.fallback_strategy if strategy else 'standard',
        )
        logger.info(f"[OK] Token allocation: {base} -> {final} tokens, "
                    f"temperature={allocation.temperature}, timeout={allocation.timeout}ms")
        return allocation

    def calculate_structured_allocation(self, complexity: ComplexityMetrics,
                                        target_language: Optional[str] = None) -> TokenAllocation:
        """Conservative allocation for schema-constrained (JSON) output"""
        base = self.calculate_allocation(complexity, target_language)
        zh = is_traditional_chinese(target_language)

        tokens = round(base.max_tokens * (0.8 if zh else 0.5))
        default_cap, zh_cap = STRUCTURED_CAPS[complexity.level]
        tokens = min(tokens, zh_cap if zh else default_cap)
        tokens = max(tokens, 400 if zh else 200)

        return replace(
            base,
            max_tokens=tokens,
            temperature=round(max(base.temperature - 0.2, 0.1), 2),
            reasoning=f"{base.reasoning}. Reduced to {tokens} tokens for structured output",
            is_structured_output=True,
        )

    def adjust_allocation(self, current: TokenAllocation, feedback: Dict[str, Any]) -> TokenAllocation:
        """Shrink an allocation after a failed or truncated generation.

        feedback keys: finish_reason, was_token_limit_hit, json_truncated, processing_time
        """
        tokens = current.max_tokens
        adjustments = []

        limit_hit = feedback.get('finish_reason') == 'MAX_TOKENS' or bool(feedback.get('was_token_limit_hit'))
        if limit_hit:
            if current.is_structured_output:
                tokens = round(tokens * 0.6)
                adjustments.append('Reduced due to MAX_TOKENS in structured output')
            else:
                tokens = round(tokens * 0.7)
                adjustments.append('Reduced due to MAX_TOKENS')

        if feedback.get('json_truncated'):
            tokens = round(tokens * 0.65)
            adjustments.append('Reduced due to JSON truncation')

        if (feedback.get('processing_time') or 0) > SLOW_PROCESSING_MS:
            tokens = round(tokens * 0.9)
            adjustments.append('Reduced due to slow processing')

        tokens = max(tokens, 150 if current.is_structured_output else 300)
        temperature = round(max(current.temperature - 0.1, 0.1), 2) if limit_hit else current.temperature

        if adjustments:
            logger.info(f"[WARN] Allocation adjusted {current.max_tokens} -> {tokens}: {', '.join(adjustments)}")

        return replace(
            current,
            max_tokens=tokens,
            temperature=temperature,
            reasoning=f"{current.reasoning}. Dynamically adjusted: {', '.join(adjustments) or 'none'}",
        )

    @staticmethod
    def get_allocation_summary(allocation: TokenAllocation) -> str:
        mode = 'structured' if allocation.is_structured_output else 'standard'
        return (f"{allocation.max_tokens} tokens ({mode}), temperature {allocation.temperature}, "
                f"timeout {allocation.timeout // 1000}s, {allocation.risk_adjustment}")

    @staticmethod
    def _timeout(complexity: ComplexityMetrics) -> int:
        timeout = COMPLEXITY_THRESHOLDS[complexity.level]['max_processing_time']
        risk = complexity.risk_factors.processing_time
        if risk == HIGH:
            timeout *= 1.5
        elif risk == MEDIUM:
            timeout *= 1.2
        return int(min(max(timeout, MIN_TIMEOUT_MS), MAX_TIMEOUT_MS))

    @staticmethod
    def _reasoning(complexity: ComplexityMetrics, original: int, final: int) -> str:
        reasons = [f"Base allocation for {complexity.level.value} content: {original} tokens"]
        if original != final:
            change = round((final - original) / original * 100)
            reasons.append(f"Adjusted to {final} tokens ({'+' if change > 0 else ''}{change}%) based on risk factors")
        reasons.append(f"Content metrics: {complexity.character_count} characters, {complexity.scene_count} scenes")
        reasons.append(f"Estimated content length: {complexity.total_content_length} chars")
        return '. '.join(reasons)


token_allocation_manager = TokenAllocationManager()

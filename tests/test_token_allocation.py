import pytest

from storycraft.complexity import ComplexityLevel, ComplexityMetrics, ContentComplexityAnalyzer, RiskFactors
from storycraft.token_allocation import TokenAllocationManager, is_traditional_chinese

manager = TokenAllocationManager()


def metrics(level, **risks):
    risk_factors = RiskFactors(**risks)
    return ComplexityMetrics(
        total_score=0,
        level=level,
        risk_factors=risk_factors,
        recommended_strategy=ContentComplexityAnalyzer.processing_strategy(level, risk_factors),
    )


@pytest.mark.parametrize('language', ['繁體中文', 'Traditional Chinese', 'zh-TW'])
def test_traditional_chinese_aliases(language):
    assert is_traditional_chinese(language)


def test_simple_content_in_english():
    allocation = manager.calculate_allocation(metrics(ComplexityLevel.SIMPLE), 'English')

    assert allocation.max_tokens == 800
    assert allocation.temperature == 0.8
    assert allocation.timeout == 20000
    assert allocation.risk_adjustment == 'No adjustments needed'
    assert allocation.is_structured_output is False


def test_traditional_chinese_gets_larger_budget():
    allocation = manager.calculate_allocation(metrics(ComplexityLevel.SIMPLE), '繁體中文')

    assert allocation.max_tokens == 1200


def test_risk_multipliers_respect_minimum():
    complexity = metrics(ComplexityLevel.EXTREME, token_overflow='high', processing_time='medium',
                         json_truncation='high')

    allocation = manager.calculate_allocation(complexity, 'English')

    assert allocation.max_tokens == 500
    assert allocation.timeout == 72000
    assert allocation.fallback_strategy == 'minimal'
    assert 'High token overflow risk: -40%' in allocation.risk_adjustment


def test_structured_allocation_is_capped():
    english = manager.calculate_structured_allocation(metrics(ComplexityLevel.SIMPLE), 'English')
    chinese = manager.calculate_structured_allocation(metrics(ComplexityLevel.SIMPLE), '繁體中文')
    extreme = manager.calculate_structured_allocation(metrics(ComplexityLevel.EXTREME), 'English')

    assert english.max_tokens == 400
    assert english.temperature == 0.6
    assert english.is_structured_output
    assert chinese.max_tokens == 800
    assert extreme.max_tokens == 250


def test_adjust_after_token_limit():
    current = manager.calculate_allocation(metrics(ComplexityLevel.SIMPLE), '繁體中文')

    adjusted = manager.adjust_allocation(current, {'finish_reason': 'MAX_TOKENS'})

    assert adjusted.max_tokens == 840
    assert adjusted.temperature == 0.7
    assert 'Reduced due to MAX_TOKENS' in adjusted.reasoning


def test_adjust_structured_with_truncation_hits_floor():
    current = manager.calculate_structured_allocation(metrics(ComplexityLevel.SIMPLE), 'English')

    adjusted = manager.adjust_allocation(current, {'was_token_limit_hit': True, 'json_truncated': True})

    assert adjusted.max_tokens == 156
    assert adjusted.is_structured_output


def test_adjust_standard_floor():
    current = manager.calculate_allocation(metrics(ComplexityLevel.SIMPLE), 'English')
    current.max_tokens = 400

    adjusted = manager.adjust_allocation(current, {'finish_reason': 'MAX_TOKENS'})

    assert adjusted.max_tokens == 300


def test_no_feedback_keeps_allocation():
    current = manager.calculate_allocation(metrics(ComplexityLevel.MODERATE), 'English')

    adjusted = manager.adjust_allocation(current, {'finish_reason': 'STOP', 'processing_time': 1000})

    assert adjusted.max_tokens == current.max_tokens
    assert adjusted.temperature == current.temperature


def test_summary():
    allocation = manager.calculate_allocation(metrics(ComplexityLevel.SIMPLE), 'English')

    assert TokenAllocationManager.get_allocation_summary(allocation) == \
        '800 tokens (standard), temperature 0.8, timeout 20s, No adjustments needed'

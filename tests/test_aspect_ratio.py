import pytest

from storycraft.aspect_ratio import (
    DEFAULT_ASPECT_RATIO, estimate_cost, get_aspect_ratio, get_resolution, match_dimensions, validate_aspect_ratio,
)
from storycraft.errors import AspectRatioValidationError, UnsupportedAspectRatioError


def test_default_is_widescreen():
    assert validate_aspect_ratio(None) is DEFAULT_ASPECT_RATIO
    assert DEFAULT_ASPECT_RATIO.id == '16:9'


def test_portrait_ratio():
    portrait = get_aspect_ratio('9:16')

    assert portrait.is_portrait
    assert portrait.to_dict()['resolutionMappings']['high'] == {'width': 1080, 'height': 1920}


def test_unsupported_ratio_lists_supported():
    with pytest.raises(UnsupportedAspectRatioError) as exc_info:
        validate_aspect_ratio('4:3')

    assert exc_info.value.metadata['supportedRatios'] == ['16:9', '9:16']


def test_malformed_ratio():
    with pytest.raises(AspectRatioValidationError):
        validate_aspect_ratio('wide')


def test_resolution_lookup():
    assert get_resolution('16:9', 'high') == {'width': 1920, 'height': 1080}
    with pytest.raises(AspectRatioValidationError):
        get_resolution('16:9', 'ultra')


def test_cost_multiplier():
    assert estimate_cost('9:16', 10.0) == pytest.approx(11.0)


def test_match_dimensions():
    assert match_dimensions(1920, 1080).id == '16:9'
    assert match_dimensions(1000, 1000) is None
    assert match_dimensions(10, 0) is None

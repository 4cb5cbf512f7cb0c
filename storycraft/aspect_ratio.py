"""
Supported output aspect ratios and their resolution/cost mappings.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from storycraft.errors import AspectRatioValidationError, UnsupportedAspectRatioError

QUALITIES = ('low', 'medium', 'high')


@dataclass(frozen=True)
class AspectRatio:
    id: str
    label: str
    width: int
    height: int
    description: str
    resolutions: Dict[str, Tuple[int, int]] = field(hash=False)
    cost_multiplier: float = 1.0
    services: Tuple[str, ...] = ('imagen', 'veo')

    @property
    def ratio(self) -> float:
        return self.width / self.height

    @property
    def is_portrait(self) -> bool:
        return self.ratio < 1

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'label': self.label,
            'ratio': self.ratio,
            'width': self.width,
            'height': self.height,
            'description': self.description,
            'costMultiplier': self.cost_multiplier,
            'resolutionMappings': {q: {'width': w, 'height': h} for q, (w, h) in self.resolutions.items()},
        }


ASPECT_RATIOS: List[AspectRatio] = [
    AspectRatio(
        id='16:9',
        label='16:9 Widescreen',
        width=16,
        height=9,
        description='Standard widescreen format for movies and TV',
        resolutions={'low': (960, 540), 'medium': (1280, 720), 'high': (1920, 1080)},
        cost_multiplier=1.0,
    ),
    AspectRatio(
        id='9:16',
        label='9:16 Portrait',
        width=9,
        height=16,
        description='Vertical format for mobile and social media',
        resolutions={'low': (540, 960), 'medium': (720, 1280), 'high': (1080, 1920)},
        cost_multiplier=1.1,
    ),
]

DEFAULT_ASPECT_RATIO = ASPECT_RATIOS[0]


def get_aspect_ratio(aspect_id: Optional[str]) -> Optional[AspectRatio]:
    for aspect in ASPECT_RATIOS:
        if aspect.id == aspect_id:
            return aspect
    return None


def validate_aspect_ratio(aspect_id: Optional[str], service: str = 'imagen') -> AspectRatio:
    """Resolve an id to a supported ratio; None falls back to the default"""
    if aspect_id is None:
        return DEFAULT_ASPECT_RATIO
    if not isinstance(aspect_id, str) or ':' not in aspect_id:
        raise AspectRatioValidationError(f"Invalid aspect ratio format: {aspect_id!r}", str(aspect_id))

    aspect = get_aspect_ratio(aspect_id)
    supported = get_supported_aspect_ratios(service)
    if aspect is None or aspect not in supported:
        raise UnsupportedAspectRatioError(aspect_id, service, [a.id for a in supported])
    return aspect


def get_supported_aspect_ratios(service: str) -> List[AspectRatio]:
    return [a for a in ASPECT_RATIOS if service in a.services]


def get_resolution(aspect_id: str, quality: str = 'medium') -> Dict[str, int]:
    aspect = validate_aspect_ratio(aspect_id)
    if quality not in QUALITIES:
        raise AspectRatioValidationError(f"Unknown quality '{quality}'", aspect_id, {'quality': quality})
    width, height = aspect.resolutions[quality]
    return {'width': width, 'height': height}


def estimate_cost(aspect_id: str, base_price: float) -> float:
    return base_price * validate_aspect_ratio(aspect_id).cost_multiplier


def match_dimensions(width: int, height: int, tolerance: float = 0.01) -> Optional[AspectRatio]:
    """Find the supported ratio matching pixel dimensions"""
    if height <= 0:
        return None
    ratio = width / height
    for aspect in ASPECT_RATIOS:
        if abs(aspect.ratio - ratio) < tolerance:
            return aspect
    return None

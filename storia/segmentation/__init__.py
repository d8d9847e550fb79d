from storia.segmentation.segmenter import (
    SceneDraft,
    SceneSegmenter,
    build_spreads,
    spread_index_for_page,
    validate_partition,
)
from storia.segmentation.similarity import are_equivalent, is_scene_change, similarity_score

__all__ = [
    "SceneDraft",
    "SceneSegmenter",
    "build_spreads",
    "spread_index_for_page",
    "validate_partition",
    "are_equivalent",
    "is_scene_change",
    "similarity_score",
]

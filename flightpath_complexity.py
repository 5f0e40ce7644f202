"""
Complexity scoring and model-tier selection.

    score = text      (len/25, max 20)
          + files     (estimated * 2.5, max 25)
          + platform  (both 20, mobile 10, backend 0)
          + novelty   (15 if no matching templates)
          + spread    ((distinct dirs - 1) * 4, max 20)

rounded and clamped to [0, 100]. Pure functions only.
"""

import math
import os
from typing import Tuple, Union

from flightpath_models import (
    ComplexityFactors, ExplorationDepth, MergedExplorationContext, ModelTier, Requirement,
)

MEDIUM_THRESHOLD = 30
HIGH_THRESHOLD = 70

PLATFORM_POINTS = {"both": 20, "mobile": 10, "backend": 0}


def compute_complexity_factors(requirement: Requirement,
                               context: MergedExplorationContext) -> ComplexityFactors:
    files = context.related_files
    text_length = (len(requirement.description or "")
                   + len("".join(requirement.acceptance_criteria))
                   + len(requirement.title or ""))
    estimated_files = len(files.templates) + len(files.types) + math.ceil(len(files.tests) / 2)

    directories = set()
    for path in list(files.templates) + list(files.types):
        parts = [p for p in path.split("/") if p]
        if len(parts) >= 2:
            directories.add(os.path.dirname(path.strip("/")))

    return ComplexityFactors(
        text_length=text_length,
        estimated_files=estimated_files,
        platform=requirement.platform or "backend",
        is_novel=len(files.templates) == 0,
        cross_module=max(0, len(directories) - 1),
    )


def compute_complexity_score(factors: ComplexityFactors) -> int:
    score = 0.0
    score += min(20, factors.text_length // 25)
    score += min(25, factors.estimated_files * 2.5)
    score += PLATFORM_POINTS.get(factors.platform, 0)
    score += 15 if factors.is_novel else 0
    score += min(20, factors.cross_module * 4)
    return max(0, min(100, int(round(score))))


def select_model_tier(depth: Union[ExplorationDepth, str], score: int) -> ModelTier:
    """quick → cheapest, thorough → top, otherwise by score (<30, <70, else)."""
    depth = ExplorationDepth(depth) if isinstance(depth, str) else depth
    if depth is ExplorationDepth.QUICK:
        return ModelTier.HAIKU
    if depth is ExplorationDepth.THOROUGH:
        return ModelTier.OPUS
    if score < MEDIUM_THRESHOLD:
        return ModelTier.HAIKU
    if score < HIGH_THRESHOLD:
        return ModelTier.SONNET
    return ModelTier.OPUS


def score_requirement(requirement: Requirement, context: MergedExplorationContext,
                      depth: Union[ExplorationDepth, str]) -> Tuple[ComplexityFactors, int, ModelTier]:
    factors = compute_complexity_factors(requirement, context)
    score = compute_complexity_score(factors)
    return factors, score, select_model_tier(depth, score)

"""
Bounded, category-driven retry patch.

A retry never carries free text forward. Each rejection is reduced to a set
of canonical categories, each mapped to exactly one short instruction; the
patch holds only the categories flagged by THIS rejection. Raw reviewer
notes are never copied into it.

Fill order (first occurrence of a category wins):
    1. categories from the rejection analysis
    2. up to 2 learned constraints from the analysis, each < 100 chars
    3. structured QA issues of severity critical / major
    4. room-type violation and structural violation (both reduce creativity)
    5. the reviewer's category
"""

from __future__ import annotations

import logging
import random
import re
from dataclasses import dataclass, field
from types import MappingProxyType

logger = logging.getLogger(__name__)

SEED_UPPER_BOUND = 2147483647
MAX_LEARNED_CONSTRAINTS = 2
LEARNED_CONSTRAINT_MAX_LENGTH = 100
PATCH_SEVERITIES = frozenset({"critical", "major"})

CATEGORY_PATCHES: MappingProxyType = MappingProxyType({
    # Room / layout
    "wrong_room": "Generate ONLY the specified room - do not show adjacent rooms or different spaces.",
    "wrong_camera_direction": "Camera MUST face the specified direction exactly.",
    "hallucinated_opening": "Do NOT create doorways or windows that don't exist in the floor plan.",
    "layout_mismatch": "Match room layout EXACTLY to the floor plan.",
    # Furniture
    "missing_major_furniture": "Include ALL major furniture shown in the floor plan.",
    "extra_major_furniture": "Do NOT add furniture beyond what appears in the floor plan.",
    "furniture_scale": "Maintain correct furniture scale - beds sized appropriately for room type.",
    "extra_furniture": "Do not add furniture not explicitly present in the floor plan.",
    "scale_mismatch": "Verify furniture and room scale matches real-world proportions.",
    # Structure
    "structural_change": "Preserve all walls, doors, and windows exactly as shown in the plan.",
    "ignored_camera": "Respect the camera position and viewing angle specified.",
    # Surfaces / materials
    "flooring_mismatch": "Use flooring materials consistent with the room type and style.",
    "style_mismatch": "Apply the specified design style consistently.",
    "room_type_violation": "Do not include fixtures that belong to a different room type.",
    # Image quality
    "artifact": "Generate clean image without visual artifacts or distortions.",
    "perspective": "Use correct eye-level perspective without fisheye distortion.",
    "perspective_distortion": "Avoid fisheye distortion - use natural perspective.",
    "seam": "Ensure seamless blending without visible joins or ghosting.",
    "seam_issue": "Ensure seamless blending at all edges.",
    "hallucination": "Only include elements present in the source images - no invented objects.",
})

CATEGORY_ALIASES: MappingProxyType = MappingProxyType({
    "structural": "structural_change",
    "wall_rectification": "structural_change",
    "geometry_distortion": "structural_change",
    "flooring": "flooring_mismatch",
    "room_type": "room_type_violation",
    "duplicate": "hallucination",
})

_SEPARATORS = re.compile(r"[_\s-]+")


def normalize_category(raw: str | None) -> str | None:
    """Map a free-form category/issue type onto the canonical set, else None."""
    if not raw:
        return None
    key = _SEPARATORS.sub("_", str(raw).strip().lower())
    key = CATEGORY_ALIASES.get(key, key)
    return key if key in CATEGORY_PATCHES else None


def room_type_instruction(detected_room_type: str | None) -> str:
    detected = (detected_room_type or "").strip() or "bathroom"
    return f"This is NOT a {detected} - do not include {detected} fixtures."


@dataclass
class RetryPatch:
    category_patches: list[dict] = field(default_factory=list)
    new_seed: int = 0
    reduce_creativity: bool = False
    learning_applied: bool = False

    @property
    def categories(self) -> list[str]:
        return [p["category"] for p in self.category_patches]

    def to_dict(self) -> dict:
        return {
            "category_patches": [dict(p) for p in self.category_patches],
            "new_seed": self.new_seed,
            "reduce_creativity": self.reduce_creativity,
            "learning_applied": self.learning_applied,
        }


def build_retry_patch(structured_qa_result: dict | None, user_category: str | None = None,
                      analysis=None, rng: random.Random | None = None) -> RetryPatch:
    """Build the patch for one retry.

    ``analysis`` is a RejectionAnalysis (or None when analysis was
    unavailable). ``rng`` is injectable for deterministic seeds in tests.
    """
    rng = rng or random
    patch = RetryPatch(new_seed=rng.randrange(0, SEED_UPPER_BOUND))
    seen: set[str] = set()

    def _add(category: str, text: str) -> None:
        seen.add(category)
        patch.category_patches.append({"category": category, "patch_text": text})

    if analysis is not None:
        patch.learning_applied = True
        for raw in analysis.failure_categories or []:
            category = normalize_category(raw)
            if category and category not in seen:
                _add(category, CATEGORY_PATCHES[category])

        for constraint in (analysis.constraints_to_add or [])[:MAX_LEARNED_CONSTRAINTS]:
            text = (constraint or "").strip()
            if text and len(text) < LEARNED_CONSTRAINT_MAX_LENGTH:
                patch.category_patches.append({"category": "learned_constraint", "patch_text": text})

    qa = structured_qa_result or {}

    for issue in qa.get("issues") or []:
        if not isinstance(issue, dict):
            continue
        if str(issue.get("severity") or "").lower() not in PATCH_SEVERITIES:
            continue
        category = normalize_category(issue.get("type"))
        if category and category not in seen:
            _add(category, CATEGORY_PATCHES[category])

    if qa.get("room_type_violation"):
        if "room_type_violation" not in seen:
            _add("room_type_violation", room_type_instruction(qa.get("detected_room_type")))
        patch.reduce_creativity = True

    if qa.get("structural_violation"):
        if "structural_change" not in seen:
            _add("structural_change", CATEGORY_PATCHES["structural_change"])
        patch.reduce_creativity = True

    category = normalize_category(user_category)
    if category and category not in seen:
        _add(category, CATEGORY_PATCHES[category])

    logger.debug("Built retry patch: %d entries, learning=%s, categories=%s",
                 len(patch.category_patches), patch.learning_applied, patch.categories)
    return patch

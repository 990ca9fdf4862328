"""Tests for retry patch construction (bounded learning on each retry)."""

import random

from floorflow.integrations.generation_gateway import RejectionAnalysis
from floorflow.services.retry_patch import (
    CATEGORY_PATCHES,
    MAX_LEARNED_CONSTRAINTS,
    SEED_UPPER_BOUND,
    build_retry_patch,
    normalize_category,
    room_type_instruction,
)


def test_normalize_category_aliases_and_separators():
    assert normalize_category("Wall Rectification") == "structural_change"
    assert normalize_category("perspective-distortion") == "perspective_distortion"
    assert normalize_category("duplicate") == "hallucination"
    assert normalize_category("not a thing") is None
    assert normalize_category(None) is None


def test_room_type_instruction():
    assert room_type_instruction("kitchen") == "This is NOT a kitchen - do not include kitchen fixtures."
    assert "bathroom" in room_type_instruction(None)


def test_seed_is_in_range_and_injectable():
    patch = build_retry_patch(None, rng=random.Random(3))
    again = build_retry_patch(None, rng=random.Random(3))
    assert 0 <= patch.new_seed < SEED_UPPER_BOUND
    assert patch.new_seed == again.new_seed


def test_empty_inputs_give_empty_patch():
    patch = build_retry_patch(None)
    assert patch.category_patches == []
    assert not patch.learning_applied
    assert not patch.reduce_creativity


def test_qa_issues_only_major_and_critical(qa_fail):
    patch = build_retry_patch(qa_fail)
    assert patch.categories == ["wrong_room", "room_type_violation"]
    assert patch.category_patches[1]["patch_text"] == room_type_instruction("bathroom")
    assert patch.reduce_creativity
    assert not patch.learning_applied


def test_analysis_comes_first_and_constraints_are_bounded():
    analysis = RejectionAnalysis(
        failure_categories=["structural", "wrong_room", "unknown"],
        constraints_to_add=["Keep the window on the north wall", "x" * 150, "Third", "Fourth"],
    )
    patch = build_retry_patch({"structural_violation": True}, "wrong_room", analysis)
    assert patch.learning_applied
    assert patch.categories[:2] == ["structural_change", "wrong_room"]
    learned = [p for p in patch.category_patches if p["category"] == "learned_constraint"]
    assert len(learned) <= MAX_LEARNED_CONSTRAINTS
    assert learned == [{"category": "learned_constraint", "patch_text": "Keep the window on the north wall"}]
    # structural_violation already covered by the analysis; no duplicate entry
    assert patch.categories.count("structural_change") == 1
    assert patch.reduce_creativity


def test_user_category_is_last():
    patch = build_retry_patch({"issues": [{"type": "artifact", "severity": "major"}]}, "flooring")
    assert patch.categories == ["artifact", "flooring_mismatch"]
    assert patch.category_patches[1]["patch_text"] == CATEGORY_PATCHES["flooring_mismatch"]
    assert patch.to_dict()["category_patches"][0]["category"] == "artifact"

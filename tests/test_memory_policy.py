from datetime import datetime

from coachcore.models import MemoryCategory
from coachcore.services.memory_policy import (
    CATEGORY_PRIORITY,
    bounded_merge,
    classify_memory_category,
    expiry_for,
    priority_for,
)


def test_classifier_checks_categories_in_order():
    # "value" (core identity) wins over "usually" (patterns)
    assert classify_memory_category("Honesty is a value he usually defends") == MemoryCategory.core_identity
    assert classify_memory_category("She tends to withdraw when criticized") == MemoryCategory.patterns
    assert classify_memory_category("Likes hiking on weekends") == MemoryCategory.preferences
    assert classify_memory_category("Currently between jobs") == MemoryCategory.contextual
    assert classify_memory_category("Went to Lisbon in May") == MemoryCategory.episodic


def test_classifier_knows_german_keywords():
    assert classify_memory_category("Sie mag lange Spaziergänge") == MemoryCategory.preferences
    assert classify_memory_category("Ist heute müde") == MemoryCategory.contextual


def test_priority_and_expiry_tables():
    now = datetime(2024, 1, 1)
    assert priority_for("core_identity") == 1.0
    assert sorted(CATEGORY_PRIORITY.values(), reverse=True) == [1.0, 0.8, 0.6, 0.4, 0.2]
    assert expiry_for(MemoryCategory.core_identity, now) is None
    assert expiry_for(MemoryCategory.patterns, now) == datetime(2024, 12, 31)
    assert expiry_for(MemoryCategory.contextual, now) == datetime(2024, 1, 31)


def test_bounded_merge_appends():
    assert bounded_merge("Likes tea", "Likes green tea", 100) == "Likes tea. Likes green tea"
    assert bounded_merge("", "New fact", 100) == "New fact"
    assert bounded_merge("Old fact", "  ", 100) == "Old fact"


def test_bounded_merge_drops_oldest_segments():
    merged = bounded_merge("aaaa. bbbb. cccc", "dddd", 12)
    assert merged == "cccc. dddd"


def test_bounded_merge_truncates_single_oversized_addition():
    assert bounded_merge("short", "x" * 50, 10) == "x" * 10

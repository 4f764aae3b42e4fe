"""Unit tests for the checklist engine."""

import pytest
from conftest import at

from flowgenius.agent.checklist import (
    DEFAULT_ITEMS,
    FALLBACK_THRESHOLDS,
    apply_turn,
    compute_active_items,
    dismiss_partial,
    fallback_scores,
    initialize_checklist,
    progress_line,
    record_probe,
    select_probe_candidate,
)

IDS = [item["id"] for item in DEFAULT_ITEMS]


@pytest.fixture()
def checklist() -> dict:
    return initialize_checklist()


def test_initial_checklist(checklist) -> None:
    assert len(checklist["items"]) == 10
    assert checklist["min_required"] == 8
    assert checklist["progress"] == 0
    assert checklist["is_complete"] is False
    # Ties on priority keep declaration order.
    assert checklist["active_items"] == ["problem_definition", "target_users"]


def test_eight_of_ten_completes_the_checklist(checklist) -> None:
    scores = {item_id: 0.9 for item_id in IDS[:8]}

    updated = apply_turn(checklist, scores, "a long detailed answer", now=at(0))

    assert updated["is_complete"] is True
    assert updated["progress"] == 80
    assert updated["completed_items"] == IDS[:8]
    assert updated["last_addressed_item"] == IDS[0]
    done = [item for item in updated["items"] if item["completed"]]
    assert all(item["completed_at"] == at(0) for item in done)


def test_thresholds(checklist) -> None:
    updated = apply_turn(
        checklist,
        {"problem_definition": 0.8, "target_users": 0.79, "key_features": 0.3, "ui_aspects": 0.29},
        "text",
    )

    assert updated["completed_items"] == ["problem_definition"]
    assert updated["partial_items"] == ["target_users", "key_features"]
    assert "ui_aspects" not in updated["partial_items"]


def test_response_snippet_is_truncated(checklist) -> None:
    text = "x" * 500
    updated = apply_turn(checklist, {"problem_definition": 1.0}, text)

    item = next(i for i in updated["items"] if i["id"] == "problem_definition")
    assert item["response"] == "x" * 200


def test_completion_removes_partial(checklist) -> None:
    partial = apply_turn(checklist, {"target_users": 0.5}, "some users")
    completed = apply_turn(partial, {"target_users": 0.95}, "detailed users")

    assert "target_users" in completed["completed_items"]
    assert "target_users" not in completed["partial_items"]


def test_completed_items_never_shrink(checklist) -> None:
    first = apply_turn(checklist, {"problem_definition": 0.9, "target_users": 0.9}, "text")
    second = apply_turn(first, {"problem_definition": 0.0, "target_users": 0.1}, "text")

    assert set(first["completed_items"]) <= set(second["completed_items"])
    assert second["progress"] >= first["progress"]


def test_last_addressed_item_retained_without_new_completion(checklist) -> None:
    first = apply_turn(checklist, {"key_features": 0.9}, "text")
    second = apply_turn(first, {}, "text")
    assert second["last_addressed_item"] == "key_features"


def test_active_items_recomputed_from_priorities(checklist) -> None:
    updated = apply_turn(checklist, {item_id: 0.9 for item_id in IDS[:4]}, "text")
    assert updated["active_items"] == ["key_features", "user_interactions"]


def test_compute_active_items_respects_count() -> None:
    items = [{"id": "a", "priority": 1}, {"id": "b", "priority": 3}, {"id": "c", "priority": 2}]
    assert compute_active_items(items, ["b"], count=1) == ["c"]


def test_apply_turn_does_not_mutate_input(checklist) -> None:
    apply_turn(checklist, {"problem_definition": 0.9}, "text")
    assert checklist["completed_items"] == []
    assert checklist["items"][0]["completed"] is False


def test_probe_candidate_is_highest_priority_unprobed(checklist) -> None:
    updated = apply_turn(checklist, {"design_visuals": 0.5, "key_features": 0.5}, "text")

    candidate = select_probe_candidate(updated)

    assert candidate is not None
    assert candidate["id"] == "key_features"


def test_probe_once_then_move_on(checklist) -> None:
    partial = apply_turn(checklist, {"key_features": 0.5}, "text")
    probed = record_probe(partial, "key_features")
    probed = record_probe(probed, "key_features")

    assert probed["followup_counts"]["key_features"] == 1
    assert probed["last_probed_item"] == "key_features"
    assert select_probe_candidate(probed) is None


def test_dismissed_item_is_never_probed_again(checklist) -> None:
    turn1 = apply_turn(checklist, {"key_features": 0.5}, "text")
    turn2 = apply_turn(turn1, {"key_features": 0.5}, "text")
    assert select_probe_candidate(turn2)["id"] == "key_features"

    dismissed = dismiss_partial(turn2, "key_features")
    turn3 = apply_turn(dismissed, {"key_features": 0.5}, "text")

    assert "key_features" not in turn3["partial_items"]
    assert "key_features" not in turn3["followup_counts"]
    assert select_probe_candidate(turn3) is None


def test_dismissed_item_can_still_complete(checklist) -> None:
    dismissed = dismiss_partial(apply_turn(checklist, {"key_features": 0.5}, "text"), "key_features")
    completed = apply_turn(dismissed, {"key_features": 0.9}, "text")
    assert "key_features" in completed["completed_items"]


def test_fallback_scores_blend_keywords_and_length(checklist) -> None:
    text = "The problem we solve is a real challenge for small teams and their scope"
    scores = fallback_scores(checklist, text)

    # 4 of 8 problem_definition keywords, text longer than 50 chars.
    assert scores["problem_definition"] == pytest.approx((4 / 8 + 1.0) / 2)
    assert "technical_implementation" not in scores


def test_fallback_scores_skip_completed(checklist) -> None:
    done = apply_turn(checklist, {"problem_definition": 1.0}, "text")
    assert "problem_definition" not in fallback_scores(done, "problem problem")


def test_fallback_threshold_is_strict(checklist) -> None:
    updated = apply_turn(
        checklist, {"problem_definition": 0.4, "target_users": 0.41}, "text", thresholds=FALLBACK_THRESHOLDS
    )
    assert updated["completed_items"] == ["target_users"]
    assert updated["partial_items"] == ["problem_definition"]


def test_fallback_on_empty_text_returns_nothing(checklist) -> None:
    assert fallback_scores(checklist, "") == {}


def test_progress_line(checklist) -> None:
    updated = apply_turn(checklist, {"problem_definition": 1.0, "target_users": 1.0}, "text")
    assert progress_line(updated) == "📊 Progress: 20% complete (2/10 areas covered)"

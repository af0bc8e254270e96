from __future__ import annotations

from app.notifications.recipients import are_same_recipient_sets, assignee_list, build_recipient_list


def test_owner_first_then_others_without_blanks_or_repeats() -> None:
    assert build_recipient_list("u-owner", ["u-2", None, "", "u-owner", "u-3", "u-2"]) == ["u-owner", "u-2", "u-3"]


def test_actor_is_removed_even_when_owner() -> None:
    assert build_recipient_list("u-actor", ["u-2"], exclude_actor="u-actor") == ["u-2"]
    assert build_recipient_list("u-actor", [], exclude_actor="u-actor") == []


def test_missing_owner_and_others() -> None:
    assert build_recipient_list(None, None) == []
    assert build_recipient_list(None, ["u-1"]) == ["u-1"]


def test_same_recipient_sets_ignore_order() -> None:
    assert are_same_recipient_sets(["a", "b"], ["b", "a"]) is True
    assert are_same_recipient_sets([], None) is True


def test_same_recipient_sets_respect_length_and_duplicates() -> None:
    assert are_same_recipient_sets(["a"], ["a", "b"]) is False
    assert are_same_recipient_sets(["a", "a"], ["a", "b"]) is False
    assert are_same_recipient_sets(["a", "b"], ["a", "c"]) is False


def test_assignee_list_prefers_assigned_users() -> None:
    assert assignee_list("u-1", ["u-2", "", "u-3"]) == ["u-2", "u-3"]
    assert assignee_list("u-1", []) == ["u-1"]
    assert assignee_list(None, None) == []

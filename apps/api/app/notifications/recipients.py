from __future__ import annotations

from collections.abc import Iterable, Sequence


def build_recipient_list(
    primary_owner: str | None = None,
    others: Iterable[str | None] | None = None,
    exclude_actor: str | None = None,
) -> list[str]:
    """Owner first, then the others in order; blanks and repeats dropped, actor removed last."""
    recipients: list[str] = []
    seen: set[str] = set()
    for candidate in [primary_owner, *(others or [])]:
        if not candidate or candidate in seen:
            continue
        seen.add(candidate)
        recipients.append(candidate)
    if exclude_actor:
        recipients = [recipient for recipient in recipients if recipient != exclude_actor]
    return recipients


def are_same_recipient_sets(left: Sequence[str] | None, right: Sequence[str] | None) -> bool:
    left_items = list(left or [])
    right_items = list(right or [])
    if len(left_items) != len(right_items):
        return False
    left_set = set(left_items)
    if len(left_set) != len(set(right_items)):
        return False
    return all(item in left_set for item in right_items)


def assignee_list(assigned_to: str | None, assigned_users: Sequence[str] | None) -> list[str]:
    if assigned_users:
        return [user for user in assigned_users if user]
    return [assigned_to] if assigned_to else []

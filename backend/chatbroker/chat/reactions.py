"""Reaction engine.

Each user holds at most one emoji per message. Adding a reaction first
strips the user from every emoji on the message; any emoji left with no
users is dropped so ``count`` never reaches zero.

These functions mutate the message in place and must run while the
owning room's lock is held.
"""
from typing import Dict

from .schemas import ChatMessage, ReactionAction, ReactionEntry


def _strip_user(reactions: Dict[str, ReactionEntry], emoji: str, username: str) -> bool:
    entry = reactions.get(emoji)
    if entry is None or username not in entry.users:
        return False
    entry.users = [u for u in entry.users if u != username]
    entry.count = len(entry.users)
    if entry.count == 0:
        del reactions[emoji]
    return True


def add_reaction(message: ChatMessage, username: str, emoji: str) -> None:
    """Set ``username``'s reaction on ``message`` to ``emoji``."""
    reactions = message.reactions
    for existing in list(reactions):
        _strip_user(reactions, existing, username)

    entry = reactions.setdefault(emoji, ReactionEntry())
    entry.users.append(username)
    entry.count = len(entry.users)


def remove_reaction(message: ChatMessage, username: str, emoji: str) -> bool:
    """Withdraw ``username``'s ``emoji`` reaction. Returns False if absent."""
    return _strip_user(message.reactions, emoji, username)


def toggle_reaction(
    message: ChatMessage, username: str, emoji: str, action: ReactionAction
) -> Dict[str, dict]:
    """Apply an add/remove toggle and return the full reaction map."""
    if action == ReactionAction.ADD:
        add_reaction(message, username, emoji)
    else:
        remove_reaction(message, username, emoji)
    return message.reactions_to_wire()

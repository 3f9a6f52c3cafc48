"""
Thread reconstruction.

Messages are persisted flat; ``thread_id`` and ``parent_message_id`` act as
the edges of the conversation tree. The functions here rebuild the tree view
(main thread + branches) and the linear context of a single thread on read.
All of them are pure and run in O(n) after sorting.
"""
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Sequence, Set

from branchchat.schemas.chat import Branch, MessageRead, ThreadView


UNKNOWN = "unknown"


def _order_key(message: MessageRead):
    # id breaks ties between identical timestamps from imported data
    return (message.timestamp, message.id)


def group_messages(messages: Iterable[MessageRead]) -> ThreadView:
    """
    Partition messages into the main thread and named branches.

    Every input message ends up in exactly one list. Each list is sorted by
    timestamp. Branches are ordered by the timestamp of their first message.
    A branch's provider/model are taken from its first message.
    """
    main_thread: List[MessageRead] = []
    branch_map: Dict[str, List[MessageRead]] = defaultdict(list)

    for message in messages:
        if message.thread_id is None:
            main_thread.append(message)
        else:
            branch_map[message.thread_id].append(message)

    branches = []
    for thread_id, thread_messages in branch_map.items():
        thread_messages.sort(key=_order_key)
        first = thread_messages[0]
        branches.append(Branch(
            id=thread_id,
            messages=thread_messages,
            provider=first.provider or UNKNOWN,
            model=first.model or UNKNOWN,
        ))
    branches.sort(key=lambda b: _order_key(b.messages[0]))

    main_thread.sort(key=_order_key)
    return ThreadView(main_thread=main_thread, branches=branches)


class BranchIndex:
    """
    Index of branches by the message their first message replies to.

    Built once per view so repeated "N replies" look-ups are O(1).
    """

    def __init__(self, view: ThreadView):
        self.view = view
        self._main_ids: Set[int] = {m.id for m in view.main_thread}
        self._by_parent: Dict[int, List[Branch]] = defaultdict(list)
        for branch in view.branches:
            parent_id = branch.parent_message_id
            if parent_id is not None:
                self._by_parent[parent_id].append(branch)

    def branches_for(self, message_id: int) -> List[Branch]:
        """Branches forking off the given message."""
        if message_id not in self._main_ids:
            return []
        return list(self._by_parent.get(message_id, []))

    def reply_counts(self) -> Dict[int, int]:
        """Number of branches per main-thread message, only for messages with replies."""
        return {
            message_id: len(branches)
            for message_id, branches in self._by_parent.items()
            if message_id in self._main_ids
        }

    def orphans(self) -> List[Branch]:
        """
        Branches whose first message does not reply to a main-thread message.

        These never show up under a main-thread message; they are surfaced
        here so a caller can list them separately.
        """
        return [
            branch for branch in self.view.branches
            if branch.parent_message_id not in self._main_ids
        ]


def find_branches_for_message(branches: Sequence[Branch], message_id: int) -> List[Branch]:
    """
    Return every branch whose first message replies to ``message_id``.

    Empty for a leaf message with no replies.
    """
    return [b for b in branches if b.parent_message_id == message_id]


def find_orphaned_branches(view: ThreadView) -> List[Branch]:
    """Branches whose parent is missing or is not a main-thread message."""
    return BranchIndex(view).orphans()


def thread_context(messages: Iterable[MessageRead], thread_id: Optional[str] = None) -> List[MessageRead]:
    """
    Linear context of one thread, oldest first.

    For the main thread (``thread_id`` is None) this is every message without
    a thread id. For a branch it is the branch's own messages, prepended with
    the ancestors reached by following the first message's
    ``parent_message_id``: the parent's own thread context, cut right after
    the parent. A parent that cannot be resolved contributes nothing.
    """
    ordered = sorted(messages, key=_order_key)
    by_id = {m.id: m for m in ordered}
    return _context(ordered, by_id, thread_id, set())


def _context(
    ordered: List[MessageRead],
    by_id: Dict[int, MessageRead],
    thread_id: Optional[str],
    seen: Set[str],
) -> List[MessageRead]:
    if thread_id is None:
        return [m for m in ordered if m.thread_id is None]
    if thread_id in seen:
        # parent links form a cycle between branches
        return []
    seen.add(thread_id)

    own = [m for m in ordered if m.thread_id == thread_id]
    if not own:
        return []

    parent = by_id.get(own[0].parent_message_id)
    if parent is None:
        return own

    upstream = _context(ordered, by_id, parent.thread_id, seen)
    for index, message in enumerate(upstream):
        if message.id == parent.id:
            return upstream[:index + 1] + own
    return own

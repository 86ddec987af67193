"""History replay: journaled events and snapshot diffs for ``since`` resume."""

import logging
import os
import stat
from typing import Iterable, List, Sequence, Tuple

from watchdog.utils.dirsnapshot import DirectorySnapshot

from .flags import EventFlags
from .journal import EventJournal, SnapshotEntries

logger = logging.getLogger(__name__)


def is_under(path: str, roots: Iterable[str]) -> bool:
    """Check whether ``path`` is one of ``roots`` or lies below one of them."""
    for root in roots:
        if path == root:
            return True
        prefix = root if root.endswith(os.sep) else root + os.sep
        if path.startswith(prefix):
            return True
    return False


def take_snapshot(root: str) -> SnapshotEntries:
    """
    List a directory tree in a JSON-friendly form.

    Args:
        root: Directory to walk recursively

    Returns:
        Mapping of path to [inode, device, mtime, size, is_dir]; empty if
        the root does not exist
    """
    if not os.path.isdir(root):
        return {}

    snapshot = DirectorySnapshot(root, recursive=True)
    entries: SnapshotEntries = {}
    for path in snapshot.paths:
        info = snapshot.stat_info(path)
        entries[path] = [
            info.st_ino,
            info.st_dev,
            info.st_mtime,
            info.st_size,
            stat.S_ISDIR(info.st_mode),
        ]
    return entries


def _kind(entry: list) -> EventFlags:
    return EventFlags.IS_DIR if entry[4] else EventFlags.IS_FILE


def diff_snapshots(old: SnapshotEntries, new: SnapshotEntries) -> List[Tuple[str, EventFlags]]:
    """
    Describe how a tree changed between two listings.

    Renames are matched by inode. Directory mtime changes are not reported
    since they only mirror changes to their children.

    Returns:
        (path, flags) pairs: removals, then renames (source before
        destination), then creations, then modifications
    """
    def inode(entry):
        return entry[0], entry[1]

    removed = sorted(
        p for p, e in old.items()
        if p not in new or inode(new[p]) != inode(e)
    )
    created = sorted(
        p for p, e in new.items()
        if p not in old or inode(old[p]) != inode(e)
    )
    created_by_inode = {inode(new[p]): p for p in created}

    changes: List[Tuple[str, EventFlags]] = []
    renamed_to = set()
    renames = []

    for path in removed:
        entry = old[path]
        dest = created_by_inode.get(inode(entry))
        if dest is not None and dest not in renamed_to:
            renamed_to.add(dest)
            renames.append((path, dest, _kind(entry)))
        else:
            changes.append((path, EventFlags.REMOVED | _kind(entry)))

    for src, dest, kind in renames:
        changes.append((src, EventFlags.RENAMED | kind))
        changes.append((dest, EventFlags.RENAMED | kind))

    for path in created:
        if path not in renamed_to:
            changes.append((path, EventFlags.CREATED | _kind(new[path])))

    for path in sorted(set(old) & set(new)):
        before, after = old[path], new[path]
        if inode(before) != inode(after) or after[4]:
            continue
        if before[2] != after[2] or before[3] != after[3]:
            changes.append((
                path,
                EventFlags.MODIFIED | EventFlags.INODE_META_MOD | EventFlags.IS_FILE,
            ))

    return changes


def journaled_events(
    journal: EventJournal,
    since: int,
    roots: Sequence[str],
) -> List[Tuple[int, str, EventFlags]]:
    """
    Get journaled events newer than ``since`` that fall under ``roots``.

    Returns:
        (id, path, flags) tuples in id order
    """
    return [
        (event_id, path, EventFlags(flags))
        for event_id, path, flags in journal.events_since(since)
        if is_under(path, roots)
    ]


def offline_changes(
    journal: EventJournal,
    roots: Sequence[str],
    since: int,
) -> List[Tuple[str, EventFlags]]:
    """
    Diff each root's newest snapshot taken at or before ``since`` against
    the tree as it is now.

    Roots without such a snapshot have no baseline and report nothing.
    """
    changes: List[Tuple[str, EventFlags]] = []
    for root in roots:
        stored = journal.load_snapshot(root, at_or_before=since)
        if stored is None:
            logger.debug("No stored snapshot for %s, skipping offline diff", root)
            continue
        snapshot_id, entries = stored
        root_changes = diff_snapshots(entries, take_snapshot(root))
        logger.debug(
            "Offline diff of %s since event %d: %d change(s)",
            root, snapshot_id, len(root_changes),
        )
        changes.extend(root_changes)
    return changes


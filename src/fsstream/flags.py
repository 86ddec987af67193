"""Stream creation flags, per-event flag bits and checkpoint sentinels.

Bit values follow the FSEvents API so that checkpoints and flags persisted
by consumers stay meaningful whatever backend produced them.
"""

from enum import IntFlag


# Checkpoint sentinels
SINCE_NOW = 0
NATIVE_SINCE_NOW = 0xFFFFFFFFFFFFFFFF  # FSEvents encodes "now" as (UInt64)-1
SINCE_ALL = 1  # journal origin; every recorded event id is greater
MAX_EVENT_ID = 0xFFFFFFFFFFFFFFFF


class CreateFlags(IntFlag):
    """Flags configuring how a native stream behaves."""
    NONE = 0
    USE_CF_TYPES = 0x1  # ignored
    NO_DEFER = 0x2
    WATCH_ROOT = 0x4
    IGNORE_SELF = 0x8
    FILE_EVENTS = 0x10


class EventFlags(IntFlag):
    """Flag bits attached to each delivered event."""
    NONE = 0
    MUST_SCAN_SUBDIRS = 0x1
    USER_DROPPED = 0x2
    KERNEL_DROPPED = 0x4
    EVENT_IDS_WRAPPED = 0x8
    HISTORY_DONE = 0x10
    ROOT_CHANGED = 0x20
    MOUNT = 0x40
    UNMOUNT = 0x80

    CREATED = 0x100
    REMOVED = 0x200
    INODE_META_MOD = 0x400
    RENAMED = 0x800
    MODIFIED = 0x1000
    FINDER_INFO_MOD = 0x2000
    CHANGE_OWNER = 0x4000
    XATTR_MOD = 0x8000
    IS_FILE = 0x10000
    IS_DIR = 0x20000
    IS_SYMLINK = 0x40000


ITEM_CHANGE_FLAGS = (
    EventFlags.CREATED
    | EventFlags.REMOVED
    | EventFlags.INODE_META_MOD
    | EventFlags.RENAMED
    | EventFlags.MODIFIED
    | EventFlags.FINDER_INFO_MOD
    | EventFlags.CHANGE_OWNER
    | EventFlags.XATTR_MOD
)

ITEM_KIND_FLAGS = EventFlags.IS_FILE | EventFlags.IS_DIR | EventFlags.IS_SYMLINK


def is_since_now(since: int) -> bool:
    """Return True if ``since`` asks for live events only."""
    return since in (SINCE_NOW, NATIVE_SINCE_NOW)


def describe(flags: int) -> str:
    """Render a flag value as ``CREATED|IS_FILE`` for logs and reprs."""
    names = [
        member.name for member in EventFlags
        if member.value and flags & member.value == member.value
    ]
    return "|".join(names) if names else "NONE"

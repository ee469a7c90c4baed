"""Block-level diffs between two render outputs"""

import difflib

from mdpreview.core.models import RenderOutput


def block_ops(old: tuple[str, ...], new: tuple[str, ...]) -> list[dict]:
    """Return replace ops turning old blocks into new blocks. Empty list if identical.

    Each op is {"start", "end", "blocks"}: replace old[start:end] with blocks.
    Ops are ordered by descending start so applying them one after the other
    never shifts the indices of an op that is still to come.
    """
    matcher = difflib.SequenceMatcher(None, old, new, autojunk=False)
    ops = [
        {"start": i1, "end": i2, "blocks": list(new[j1:j2])}
        for tag, i1, i2, j1, j2 in matcher.get_opcodes()
        if tag != "equal"
    ]
    ops.reverse()
    return ops


def apply_ops(old: list[str], ops: list[dict]) -> list[str]:
    """Apply ops produced by block_ops to a copy of old (the viewer-side algorithm)."""
    blocks = list(old)
    for op in ops:
        blocks[op["start"]:op["end"]] = op["blocks"]
    return blocks


def diff_outputs(old: RenderOutput | None, new: RenderOutput) -> list[dict] | None:
    """Block ops from old to new, or None when only a full replacement will do."""
    if old is None or old.format != new.format or old.theme != new.theme:
        return None
    return block_ops(old.blocks, new.blocks)


def diff_summary(old: tuple[str, ...], new: tuple[str, ...]) -> dict[str, int]:
    """Return added/deleted/unchanged block counts. Useful for compact change logs."""
    matcher = difflib.SequenceMatcher(None, old, new, autojunk=False)
    added = deleted = unchanged = 0

    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            unchanged += i2 - i1
        elif tag == "replace":
            deleted += i2 - i1
            added += j2 - j1
        elif tag == "insert":
            added += j2 - j1
        elif tag == "delete":
            deleted += i2 - i1

    return {"added": added, "deleted": deleted, "unchanged": unchanged}

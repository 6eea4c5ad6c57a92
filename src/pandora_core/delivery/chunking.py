"""
Message chunking for size-limited channels.

Text is split on line boundaries. A fenced code block is kept whole when it
fits; a markdown table row is never split across messages.
"""

from __future__ import annotations

FENCE = "```"


def _units(text: str) -> list[tuple[str, list[str]]]:
    """Group lines into indivisible units: ``("fence", lines)`` or ``("line", [line])``."""
    units: list[tuple[str, list[str]]] = []
    fence: list[str] | None = None
    for line in text.split("\n"):
        if fence is not None:
            fence.append(line)
            if line.strip().startswith(FENCE):
                units.append(("fence", fence))
                fence = None
            continue
        if line.strip().startswith(FENCE):
            fence = [line]
            continue
        units.append(("line", [line]))
    if fence is not None:
        # Unterminated fence: close it so each chunk renders on its own.
        fence.append(FENCE)
        units.append(("fence", fence))
    return units


def _hard_split(line: str, limit: int) -> list[str]:
    """Split one overlong line, preferring whitespace."""
    pieces: list[str] = []
    while len(line) > limit:
        cut = line.rfind(" ", 0, limit)
        if cut <= 0:
            cut = limit
        pieces.append(line[:cut].rstrip())
        line = line[cut:].lstrip()
    if line:
        pieces.append(line)
    return pieces


def _split_fence(lines: list[str], limit: int) -> list[str]:
    """Split an oversized code block into several complete fenced blocks."""
    opener, body, closer = lines[0], lines[1:-1], lines[-1]
    room = limit - len(opener) - len(closer) - 2
    if room <= 0:
        return _hard_split("\n".join(lines), limit)

    blocks: list[str] = []
    current: list[str] = []
    size = 0
    for line in body:
        for piece in _hard_split(line, room) or [""]:
            added = len(piece) + (1 if current else 0)
            if current and size + added > room:
                blocks.append("\n".join([opener, *current, closer]))
                current, size = [], 0
                added = len(piece)
            current.append(piece)
            size += added
    if current or not blocks:
        blocks.append("\n".join([opener, *current, closer]))
    return blocks


def chunk_text(text: str, limit: int) -> list[str]:
    """
    Split ``text`` into messages of at most ``limit`` characters.

    Args:
        text: Markdown or plain text
        limit: Maximum characters per message

    Returns:
        Non-empty chunks in order. Empty input yields an empty list.
    """
    if limit <= 0:
        raise ValueError("limit must be positive")
    if not text.strip():
        return []
    if len(text) <= limit:
        return [text]

    chunks: list[str] = []
    current = ""

    def flush() -> None:
        nonlocal current
        if current.strip():
            chunks.append(current.strip("\n"))
        current = ""

    for kind, lines in _units(text):
        block = "\n".join(lines)
        candidate = f"{current}\n{block}" if current else block
        if len(candidate) <= limit:
            current = candidate
            continue

        flush()
        if len(block) <= limit:
            current = block
        elif kind == "fence":
            pieces = _split_fence(lines, limit)
            chunks.extend(pieces[:-1])
            current = pieces[-1]
        else:
            pieces = _hard_split(block, limit)
            chunks.extend(pieces[:-1])
            current = pieces[-1] if pieces else ""

    flush()
    return chunks


__all__ = ["chunk_text"]

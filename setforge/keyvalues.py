"""Block-level helpers for Valve KeyValues text (``items_game.txt`` and friends).

The functions in this module never build an object tree.  They work directly on
the raw text and only understand enough of the format to locate one top-level
entry of the form::

    "555"
    {
        "name"      "Some Item"
        "prefab"    "default_item"
        ...
    }

and to swap it for another block.  Brace matching is quote-aware: a ``{`` or
``}`` inside a quoted value is not structural, and a backslash escapes the
character that follows it (so ``\\"`` does not close a string).

Minified files (the whole document on one line) are handled as well, either
directly or after running them through :func:`prettify`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Iterator, List, Tuple

# Upper bound for the number of token occurrences inspected per lookup so a
# hostile document can never keep the scanner busy forever.
MAX_SCAN_ATTEMPTS = 100000

MINIFIED_MAX_LINES = 100
MINIFIED_MIN_CHARS = 10000

# Blocks shorter than this must contain one of ENTRY_MARKERS to count as an entry.
ENTRY_MIN_LENGTH = 80

ENTRY_MARKERS = (
    '"used_by_heroes"',
    '"prefab"',
    '"model_player"',
    '"item_name"',
    '"image_inventory"',
    '"portraits"',
    '"visuals"',
    '"item_slot"',
    '"item_type_name"',
    '"name"',
)

PREFAB_KEY = '"prefab"'
DEFAULT_ITEM_VALUE = '"default_item"'
OWNER_KEY = '"used_by_heroes"'

_NUMERIC_ID = re.compile(r"\d+")

# Only the characters that matter to brace matching: an escape pair, a quote or a brace.
_STRUCTURAL = re.compile(r'\\.|["{}]', re.S)

_QUOTED_TOKEN = re.compile(r'"((?:[^"\\]|\\.)*)"', re.S)

_LAYOUT_TOKEN = re.compile(
    r'//[^\n]*'
    r'|"(?:[^"\\]|\\.)*(?:"|\\?\Z)'
    r'|[{}]'
    r'|(?:[^\s"{}\\]|\\.)+'
    r'|\\\Z',
    re.S,
)

_KV_TRANSLATION = str.maketrans(
    {
        "\u201c": '"',
        "\u201d": '"',
        "\u201e": '"',
        "\u2018": "'",
        "\u2019": "'",
        "\u00a0": " ",
        "\u200b": None,
        "\u200c": None,
        "\u200d": None,
        "\u2060": None,
        "\ufeff": None,
    }
)


@dataclass
class Block:
    """One ``"id" { ... }`` entry located inside a larger document.

    ``start``/``end`` delimit the half-open span that a replacement swaps out.
    ``start`` is the beginning of the id's line when nothing but whitespace
    precedes the id on that line, otherwise the id's opening quote.
    """

    id: str
    start: int
    end: int
    brace_start: int
    text: str
    source_tag: str | None = None


def normalize_kv_text(raw: str) -> str:
    """Return *raw* with a BOM, CR line endings and typographic noise removed.

    Hand-edited manifests regularly contain smart quotes, zero-width
    characters or non-breaking spaces pasted from chat clients; all of them are
    mapped to their plain ASCII counterparts.
    """

    if not raw:
        return ""
    raw = raw.replace("\r\n", "\n").replace("\r", "\n")
    return raw.translate(_KV_TRANSLATION)


def skip_whitespace(text: str, index: int) -> int:
    length = len(text)
    while index < length and text[index].isspace():
        index += 1
    return index


def previous_non_whitespace(text: str, index: int) -> int:
    while index >= 0 and text[index].isspace():
        index -= 1
    return index


def line_start(text: str, index: int) -> int:
    """Return the offset of the first character on the line containing *index*."""

    if index <= 0:
        return 0
    return text.rfind("\n", 0, index) + 1


def balanced_block_end(text: str, brace_index: int) -> int:
    """Return the offset just past the brace matching ``text[brace_index]``.

    ``-1`` is returned when *brace_index* does not point at ``{`` or when the
    block is never closed.
    """

    if brace_index < 0 or brace_index >= len(text) or text[brace_index] != "{":
        return -1

    depth = 0
    in_quote = False
    for match in _STRUCTURAL.finditer(text, brace_index):
        char = match.group(0)
        if len(char) == 2:
            # escape pair, the escaped character is never structural
            continue
        if char == '"':
            in_quote = not in_quote
            continue
        if in_quote:
            continue
        if char == "{":
            depth += 1
        else:
            depth -= 1
            if depth == 0:
                return match.end()
    return -1


def looks_like_entry(block_text: str) -> bool:
    """Cheap heuristic separating real item entries from short unrelated blocks.

    Approximate on purpose: any of :data:`ENTRY_MARKERS` (case-insensitive) or a
    length of at least :data:`ENTRY_MIN_LENGTH` characters is enough.
    """

    if not block_text:
        return False
    lowered = block_text.lower()
    if any(marker in lowered for marker in ENTRY_MARKERS):
        return True
    return len(block_text) >= ENTRY_MIN_LENGTH


def has_default_prefab(block_text: str) -> bool:
    return PREFAB_KEY in block_text and DEFAULT_ITEM_VALUE in block_text


def is_owned_by(block_text: str, owner_tag: str) -> bool:
    return OWNER_KEY in block_text and f'"{owner_tag}"' in block_text


def _entry_start(text: str, token_index: int) -> int:
    start = line_start(text, token_index)
    if text[start:token_index].strip():
        # Other tokens share the line (minified input); start at the id itself.
        return token_index
    return start


def _iter_candidates(text: str, entry_id: str) -> Iterator[Block]:
    token = f'"{entry_id}"'
    length = len(text)
    search = 0
    attempts = 0

    while attempts < MAX_SCAN_ATTEMPTS:
        attempts += 1
        position = text.find(token, search)
        if position < 0:
            return
        search = position + 1

        brace = skip_whitespace(text, position + len(token))
        if brace >= length or text[brace] != "{":
            continue

        # A quote right before the token means the id sits in value position.
        previous = previous_non_whitespace(text, position - 1)
        if previous >= 0 and text[previous] == '"':
            continue

        end = balanced_block_end(text, brace)
        if end < 0:
            continue

        start = _entry_start(text, position)
        yield Block(entry_id, start, end, brace, text[start:end])


def find_block(
    text: str,
    entry_id: str,
    owner_tag: str | None = None,
    *,
    require_markers: bool = True,
) -> Block | None:
    """Locate the top-level entry ``"entry_id" { ... }`` inside *text*.

    When *owner_tag* is given, candidates that are not marked as used by that
    owner are skipped.  This matters for short ids which also appear as keys in
    unrelated sections (``kill_eater_score_types`` uses the same numbering).
    """

    if not text or not entry_id:
        return None

    for candidate in _iter_candidates(text, entry_id):
        if require_markers and not looks_like_entry(candidate.text):
            continue
        if owner_tag and not is_owned_by(candidate.text, owner_tag):
            continue
        return candidate
    return None


def splice_block(text: str, block: Block, replacement: str) -> str:
    """Return *text* with the span of *block* replaced by *replacement*.

    The replacement is right-trimmed and terminated by a single line break.  One
    line terminator directly following the old block is consumed with it so a
    replacement by identical content is a no-op.  The replacement takes the
    line endings of *text*: CRLF when the consumed terminator (or, failing
    that, the document) uses CRLF.
    """

    end = block.end
    if text.startswith("\r\n", end):
        newline = "\r\n"
    elif text.startswith("\n", end):
        newline = "\n"
    else:
        newline = "\r\n" if "\r\n" in text else "\n"
    end += len(newline) if text.startswith(newline, end) else 0
    body = replacement.rstrip().replace("\r\n", "\n")
    if newline == "\r\n":
        body = body.replace("\n", "\r\n")
    return text[: block.start] + body + newline + text[end:]


def replace_block(
    text: str,
    entry_id: str,
    replacement: str,
    owner_tag: str | None = None,
    *,
    require_markers: bool = True,
) -> Tuple[str, bool]:
    """Replace the entry *entry_id* with *replacement*.

    Returns ``(new_text, did_replace)``; the input is returned untouched when
    no matching entry exists.
    """

    block = find_block(text, entry_id, owner_tag, require_markers=require_markers)
    if block is None:
        return text, False
    return splice_block(text, block, replacement), True


def iter_blocks(text: str) -> Iterator[Block]:
    """Yield every block keyed by a numeric id, in document order.

    Non-numeric keys (``"items"``, ``"visuals"`` ...) are stepped into rather
    than over, so entries wrapped in a container section are still found.
    Numeric blocks are not searched for nested numeric blocks.
    """

    length = len(text)
    position = 0
    while position < length:
        match = _QUOTED_TOKEN.search(text, position)
        if match is None:
            break
        token = match.group(1)
        position = match.end()
        if not _NUMERIC_ID.fullmatch(token):
            continue

        brace = skip_whitespace(text, position)
        if brace >= length or text[brace] != "{":
            continue

        end = balanced_block_end(text, brace)
        if end < 0:
            continue

        start = _entry_start(text, match.start())
        yield Block(token, start, end, brace, text[start:end])
        position = end


def parse_kv_blocks(raw: str) -> Dict[str, str]:
    """Return ``{id: block_text}`` for every numeric entry in a manifest.

    The manifest is normalised first.  A duplicated id keeps its last block.
    """

    text = normalize_kv_text(raw)
    return {block.id: block.text for block in iter_blocks(text)}


def is_minified(text: str) -> bool:
    """Return True for documents squashed onto (almost) a single line."""

    if not text:
        return False
    return text.count("\n") < MINIFIED_MAX_LINES and len(text) > MINIFIED_MIN_CHARS


def prettify(text: str, *, force: bool = False) -> str:
    """Re-emit minified KeyValues text one key/value pair per line.

    Braces get their own lines and every nesting level adds one tab.  Input
    that is not minified is returned unchanged unless *force* is set.
    """

    if not text:
        return ""
    if not force and not is_minified(text):
        return text

    text = text.lstrip("\ufeff").replace("\r\n", "\n").replace("\r", "\n")

    lines: List[str] = []
    pending: List[str] = []
    depth = 0

    def flush() -> None:
        if pending:
            lines.append("\t" * depth + "\t".join(pending))
            pending.clear()

    for match in _LAYOUT_TOKEN.finditer(text):
        token = match.group(0)
        if token == "{":
            flush()
            lines.append("\t" * depth + "{")
            depth += 1
        elif token == "}":
            flush()
            depth = max(0, depth - 1)
            lines.append("\t" * depth + "}")
        elif token.startswith("//"):
            flush()
            lines.append("\t" * depth + token.rstrip())
        else:
            if len(pending) == 2:
                flush()
            pending.append(token)
    flush()

    return "\n".join(lines) + "\n"

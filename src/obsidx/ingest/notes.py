"""Note metadata: title, tags and wiki-links extracted from Markdown notes.

Recognised syntax:
  - YAML frontmatter between ``---`` lines (``title``, ``tags``, ``aliases``)
  - inline ``#tag`` / ``#nested/tag`` outside code fences and inline code
  - ``[[Target]]``, ``[[Target|alias]]``, ``[[Target#Heading]]`` and ``![[embed]]``
  - Markdown links to local ``.md`` files: ``[text](Other%20Note.md)``

Frontmatter is parsed with ``yaml.safe_load()``; malformed frontmatter is
ignored rather than failing the index run.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from urllib.parse import unquote

import yaml

from obsidx.ingest.breakpoints import find_fences

_FRONTMATTER_RE = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)
_H1_RE = re.compile(r"^#[ \t]+(.+?)[ \t#]*$", re.MULTILINE)
_TAG_RE = re.compile(r"(?<![\w&/#])#([A-Za-z_][\w\-/]*)")
_WIKILINK_RE = re.compile(r"!?\[\[([^\[\]|#^]+)(?:[#^][^\[\]|]*)?(?:\|[^\[\]]*)?\]\]")
_MDLINK_RE = re.compile(r"\[[^\]]*\]\(([^)\s]+\.md)(?:#[^)]*)?\)")
_INLINE_CODE_RE = re.compile(r"`[^`\n]*`")


@dataclass
class NoteMeta:
    title: str = ""
    tags: list[str] = field(default_factory=list)
    links: list[str] = field(default_factory=list)
    aliases: list[str] = field(default_factory=list)


def parse_note(text: str, path: str = "") -> NoteMeta:
    """Extract title, tags, outgoing link targets and aliases from a note.

    Title precedence: frontmatter ``title`` → first H1 → file stem.
    Tags are lower-cased without the leading ``#``; link targets keep their
    spelling with any ``.md`` suffix and heading anchor removed.
    """
    front, body = split_frontmatter(text)
    visible = _strip_code(body)

    title = str(front.get("title") or "").strip()
    if not title:
        h1 = _H1_RE.search(visible)
        title = h1.group(1).strip() if h1 else ""
    if not title and path:
        title = PurePosixPath(path).stem

    tags = _unique([_normalize_tag(t) for t in _as_list(front.get("tags") or front.get("tag"))])
    tags = _unique(tags + [_normalize_tag(m.group(1)) for m in _TAG_RE.finditer(visible)])

    links = [m.group(1).strip() for m in _WIKILINK_RE.finditer(visible)]
    links += [unquote(m.group(1)) for m in _MDLINK_RE.finditer(visible) if "://" not in m.group(1)]
    links = _unique([link_target(t) for t in links if t.strip()])

    aliases = _unique([str(a).strip() for a in _as_list(front.get("aliases")) if str(a).strip()])
    return NoteMeta(title=title, tags=[t for t in tags if t], links=links, aliases=aliases)


def split_frontmatter(text: str) -> tuple[dict, str]:
    """Return ``(frontmatter_dict, body)``; ``({}, text)`` when absent or malformed."""
    match = _FRONTMATTER_RE.match(text)
    if not match:
        return {}, text
    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError:
        return {}, text
    if not isinstance(data, dict):
        return {}, text
    return data, text[match.end():]


def link_target(raw: str) -> str:
    """Canonical link target: no ``.md`` suffix, no anchor, forward slashes."""
    target = raw.split("#", 1)[0].strip().replace("\\", "/")
    if target.lower().endswith(".md"):
        target = target[:-3]
    return target


def note_names(path: str, title: str = "", aliases: list[str] | None = None) -> list[str]:
    """Names other notes may use to link to the note at *path*."""
    p = PurePosixPath(path)
    names = [p.stem, str(p.with_suffix(""))]
    if title:
        names.append(title)
    names.extend(aliases or [])
    return _unique([n for n in names if n])


def _strip_code(text: str) -> str:
    """Blank out fenced blocks and inline code so their contents are not parsed."""
    pieces: list[str] = []
    pos = 0
    for start, end in find_fences(text):
        pieces.append(text[pos:start])
        pieces.append("\n" * text.count("\n", start, end))
        pos = end
    pieces.append(text[pos:])
    return _INLINE_CODE_RE.sub(" ", "".join(pieces))


def _normalize_tag(tag: object) -> str:
    return str(tag).strip().lstrip("#").lower()


def _as_list(value: object) -> list:
    if value is None:
        return []
    if isinstance(value, str):
        return [v for v in re.split(r"[,\s]+", value) if v]
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _unique(items: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out

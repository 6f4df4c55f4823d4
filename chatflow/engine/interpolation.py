"""Text interpolation: ``{{ variable }}`` references and ``[label](url)`` links.

Grammar
-------
The scanner walks the input once, left to right.  At each position it tries
to match one of two token forms; the first match wins and scanning resumes
after it, so tokens never overlap and never nest:

- variable  ``{{`` NAME ``}}``   NAME is one or more characters other than
  ``}``; it is trimmed, and a NAME that is blank after trimming is not a
  reference (the braces stay literal text).
- link      ``[`` LABEL ``](`` URL ``)``   LABEL has no ``]``, URL has no
  ``)``, both non-empty; both are trimmed.  Nothing inside a link is
  interpolated.

Everything else is literal text.  Each segment keeps the exact source slice
it was parsed from, so joining ``segment.raw`` for all segments reproduces
the input.

Substitution resolves variable names against the session store merged with
per-call overrides (overrides win).  Exact normalized names are tried first,
then a case-insensitive match.  Unknown names render as ``""``.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from chatflow.engine.variables import VariableStore, normalize_name, to_text

__all__ = [
    "RenderedSegment",
    "Segment",
    "SegmentKind",
    "normalize_url",
    "parse_segments",
    "render",
    "render_segments",
]


class SegmentKind(StrEnum):
    TEXT = "text"
    VARIABLE = "variable"
    LINK = "link"


@dataclass(slots=True, frozen=True)
class Segment:
    """A parsed chunk of text.

    Attributes
    ----------
    kind : SegmentKind
        Literal text, variable reference or link.
    raw : str
        Exact source slice this segment covers.
    start : int
        Offset of ``raw`` in the source text.
    content : str
        Literal text, trimmed variable name, or trimmed link label.
    url : str
        Trimmed link target as written (links only).
    """

    kind: SegmentKind
    raw: str
    start: int
    content: str
    url: str = ""

    @property
    def end(self) -> int:
        return self.start + len(self.raw)


@dataclass(slots=True, frozen=True)
class RenderedSegment:
    """A segment after substitution, for rich presentation."""

    kind: SegmentKind
    text: str
    name: str = ""
    url: str = ""

    def to_dict(self) -> dict[str, str]:
        data = {"kind": self.kind.value, "text": self.text}
        if self.kind is SegmentKind.VARIABLE:
            data["name"] = self.name
        if self.kind is SegmentKind.LINK:
            data["url"] = self.url
        return data


# ── Scanner ──────────────────────────────────────────


def _match_variable(text: str, pos: int) -> tuple[int, str] | None:
    close = text.find("}", pos + 2)
    if close <= pos + 2 or not text.startswith("}}", close):
        return None
    name = text[pos + 2 : close].strip()
    if not name:
        return None
    return close + 2, name


def _match_link(text: str, pos: int) -> tuple[int, str, str] | None:
    close = text.find("]", pos + 1)
    if close <= pos + 1 or not text.startswith("(", close + 1):
        return None
    end = text.find(")", close + 2)
    if end <= close + 2:
        return None
    return end + 1, text[pos + 1 : close].strip(), text[close + 2 : end].strip()


def parse_segments(text: str) -> list[Segment]:
    """Split *text* into literal, variable and link segments."""
    segments: list[Segment] = []
    literal_start = 0
    pos = 0
    length = len(text)

    def _flush(upto: int) -> None:
        if upto > literal_start:
            chunk = text[literal_start:upto]
            segments.append(Segment(SegmentKind.TEXT, chunk, literal_start, chunk))

    while pos < length:
        char = text[pos]
        if char == "{" and text.startswith("{{", pos):
            var = _match_variable(text, pos)
            if var is not None:
                end, name = var
                _flush(pos)
                segments.append(Segment(SegmentKind.VARIABLE, text[pos:end], pos, name))
                pos = literal_start = end
                continue
        elif char == "[":
            link = _match_link(text, pos)
            if link is not None:
                end, label, url = link
                _flush(pos)
                segments.append(Segment(SegmentKind.LINK, text[pos:end], pos, label, url))
                pos = literal_start = end
                continue
        pos += 1

    _flush(length)
    return segments


# ── Substitution ─────────────────────────────────────


Scope = VariableStore | Mapping[str, Any]


class _Resolver:
    """Merged view of a store and overrides with case-insensitive fallback."""

    __slots__ = ("_exact", "_folded")

    def __init__(self, store: Scope | None, overrides: Mapping[str, Any] | None) -> None:
        base = store.snapshot() if isinstance(store, VariableStore) else dict(store or {})
        layers = [
            {normalize_name(k): to_text(v) for k, v in (overrides or {}).items()},
            {normalize_name(k): to_text(v) for k, v in base.items()},
        ]
        self._exact: dict[str, str] = {}
        self._folded: dict[str, str] = {}
        for layer in layers:
            for name, value in layer.items():
                if not name:
                    continue
                self._exact.setdefault(name, value)
                self._folded.setdefault(name.casefold(), value)

    def resolve(self, name: str) -> str:
        key = normalize_name(name)
        if key in self._exact:
            return self._exact[key]
        return self._folded.get(key.casefold(), "")


def normalize_url(url: str) -> str:
    """Prefix ``https://`` unless *url* already has an http(s) scheme."""
    if url.startswith("http://") or url.startswith("https://"):
        return url
    return f"https://{url}"


def render(
    text: str,
    store: Scope | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> str:
    """Substitute variable references in *text*; links stay as written."""
    if not text:
        return ""
    resolver = _Resolver(store, overrides)
    parts = []
    for segment in parse_segments(text):
        if segment.kind is SegmentKind.VARIABLE:
            parts.append(resolver.resolve(segment.content))
        else:
            parts.append(segment.raw)
    return "".join(parts)


def render_segments(
    text: str,
    store: Scope | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> list[RenderedSegment]:
    """Substitute variables and resolve links for rich presentation."""
    resolver = _Resolver(store, overrides)
    rendered = []
    for segment in parse_segments(text or ""):
        if segment.kind is SegmentKind.VARIABLE:
            rendered.append(
                RenderedSegment(
                    SegmentKind.VARIABLE,
                    resolver.resolve(segment.content),
                    name=segment.content,
                )
            )
        elif segment.kind is SegmentKind.LINK:
            rendered.append(
                RenderedSegment(
                    SegmentKind.LINK, segment.content, url=normalize_url(segment.url)
                )
            )
        else:
            rendered.append(RenderedSegment(SegmentKind.TEXT, segment.content))
    return rendered

"""Highlight helpers: which messages accept highlights, and formula source lookup."""

from __future__ import annotations

import re
from dataclasses import dataclass

from ..types import Message

_BLOCK_MATH_RE = re.compile(r"\$\$[\s\S]*?\$\$")
_LATEX_BLOCK_RE = re.compile(r"\\\[[\s\S]*?\\\]")
_INLINE_MATH_RE = re.compile(r"\$[^$\n]+\$")
_LATEX_INLINE_RE = re.compile(r"\\\([\s\S]*?\\\)")


@dataclass
class FormulaSpan:
    start: int
    end: int
    source: str  # formula body without delimiters
    kind: str  # "block", "latex-block", "inline", "latex-inline"


def find_formulas(content: str) -> list[FormulaSpan]:
    """All math spans in *content*, block forms first.

    ``$...$`` whose body starts with a digit is treated as currency, not math.
    """
    spans: list[FormulaSpan] = []
    for m in _BLOCK_MATH_RE.finditer(content):
        spans.append(FormulaSpan(m.start(), m.end(), m.group(0)[2:-2].strip(), "block"))
    for m in _LATEX_BLOCK_RE.finditer(content):
        spans.append(FormulaSpan(m.start(), m.end(), m.group(0)[2:-2].strip(), "latex-block"))
    for m in _INLINE_MATH_RE.finditer(content):
        body = m.group(0)[1:-1].strip()
        if body and not body[0].isdigit():
            spans.append(FormulaSpan(m.start(), m.end(), body, "inline"))
    for m in _LATEX_INLINE_RE.finditer(content):
        spans.append(FormulaSpan(m.start(), m.end(), m.group(0)[2:-2].strip(), "latex-inline"))
    return spans


def formula_source_at(content: str, start: int, end: int) -> str | None:
    """Source of the first formula overlapping ``[start, end)``, if any."""
    for span in find_formulas(content):
        if (
            span.start <= start < span.end
            or span.start < end <= span.end
            or (start <= span.start and end >= span.end)
        ):
            return span.source or None
    return None


def can_highlight(message: Message) -> bool:
    return message.role == "assistant" and not message.disable_highlighting


def selection_text(
    message: Message,
    start: int,
    end: int,
    text: str | None = None,
    *,
    prefer_formula: bool = False,
) -> str:
    """Fragment text for a selection.

    *text* is the literal selection when the caller has one; otherwise the
    slice of the content. With *prefer_formula* a selection inside rendered
    math resolves to the formula source.
    """
    selected = (text if text is not None else message.content[max(0, start):max(0, end)]).strip()
    if prefer_formula:
        source = formula_source_at(message.content, start, end)
        if source:
            return source
    return selected

from __future__ import annotations

import re

WORD_PATTERN = re.compile(r"[A-Za-z]+(?:['-][A-Za-z]+)*")
_PARAGRAPH_BREAK = re.compile(r"\n\s*\n+")


def build_paragraphs(text: str) -> list[str]:
    normalized = re.sub(r"\r\n?", "\n", text or "")
    if not normalized.strip():
        return []
    return [p.strip() for p in _PARAGRAPH_BREAK.split(normalized) if p.strip()]


def build_paragraph_key(paragraphs: list[str]) -> str:
    if not paragraphs:
        return "paragraphs-empty"
    value = 0
    for ch in "|".join(paragraphs):
        value = (value * 31 + ord(ch)) & 0xFFFFFFFF
    return f"paragraphs-{len(paragraphs)}-{value}"


def count_words(text: str) -> int:
    return sum(1 for _ in WORD_PATTERN.finditer(text or ""))

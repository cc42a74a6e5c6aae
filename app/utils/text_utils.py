"""Text utility functions for narration scripts."""

# This module is part of app.utils package

import json
import re
from typing import Any, NamedTuple, Optional


def count_words(text: str) -> int:
    """Count whitespace-separated words."""
    return len(str(text or "").split())


def estimate_spoken_duration(text: str, words_per_second: float = 2.75) -> float:
    """
    Estimate the spoken duration of text in seconds.

    Args:
        text: Text to estimate duration for.
        words_per_second: Average speaking rate.

    Returns:
        Estimated duration in seconds.
    """
    if words_per_second <= 0:
        return 0.0
    return count_words(text) / words_per_second


def truncate_to_word_cap(text: str, cap: int) -> str:
    """
    Hard-trim text to at most cap words.

    A trailing comma/semicolon/colon left by the cut becomes a period.
    """
    words = str(text or "").split()
    if len(words) <= cap:
        return str(text or "").strip()
    truncated = " ".join(words[:cap])
    truncated = re.sub(r"[,;:]$", ".", truncated)
    return truncated


def cleanup_speech_text(text: str) -> str:
    """Fix spacing around punctuation and collapse doubled punctuation."""
    t = str(text or "")
    t = re.sub(r"\s+([,.;:!?])", r"\1", t)
    t = re.sub(r"([,;:!?]){2,}", r"\1", t)
    t = re.sub(r",\s*,", ", ", t)
    t = re.sub(r",\s*([.!?])", r"\1", t)
    t = re.sub(r"\s+", " ", t).strip()
    return t


def clean_for_tts(text: str) -> str:
    """Strip URLs/emails and collapse runs of punctuation before synthesis."""
    t = str(text or "")
    t = re.sub(r"(https?://\S+|www\.\S+|\S+@\S+\.\S+)", " ", t, flags=re.IGNORECASE)
    t = re.sub(r"\.{4,}", "...", t)
    t = re.sub(r"([!?]){2,}", r"\1", t)
    t = re.sub(r",{2,}", ",", t)
    t = re.sub(r";{2,}", ";", t)
    t = re.sub(r":{2,}", ":", t)
    return re.sub(r"\s+", " ", t).strip()


def split_sentences(text: str) -> list[str]:
    """Split on terminal punctuation followed by whitespace, keeping the punctuation."""
    raw = str(text or "").strip()
    if not raw:
        return []
    parts = re.split(r"(?<=[.!?])\s+", raw)
    return [p.strip() for p in parts if p.strip()] or [raw]


# ============================================================================
# Meta narration
# ============================================================================

META_SENTENCE_PATTERNS = [
    re.compile(r"\b(outro|intro)\b", re.IGNORECASE),
    re.compile(r"\b(in this video|in this clip|in this segment|next video|next clip)\b", re.IGNORECASE),
    re.compile(r"\b(next|this|that|first|second|third|final)\s+segment\b", re.IGNORECASE),
    re.compile(r"\b(move on to the outro|moving to the outro|go to the outro)\b", re.IGNORECASE),
]


def is_meta_sentence(sentence: str) -> bool:
    return any(p.search(sentence or "") for p in META_SENTENCE_PATTERNS)


def strip_meta_narration(text: str) -> str:
    """
    Drop sentences that talk about the video itself ("in this video", "the outro").

    If every sentence is meta, the meta phrases are removed in place instead.
    """
    raw = str(text or "").strip()
    if not raw:
        return raw
    kept = [s for s in split_sentences(raw) if not is_meta_sentence(s)]
    cleaned = cleanup_speech_text(" ".join(kept))
    if cleaned:
        return cleaned
    softened = raw
    for pattern in META_SENTENCE_PATTERNS:
        softened = pattern.sub("", softened)
    return cleanup_speech_text(softened)


# ============================================================================
# Filler words & micro-emotes
# ============================================================================

FILLER_WORD_REGEX = re.compile(r"\b(?:um+|uh+|uhm+|erm+|er|ah+|hmm+)\b", re.IGNORECASE)
LIKE_FILLER_REGEX = re.compile(r"([,.!?]\s+)like\s*,\s*", re.IGNORECASE)
MICRO_EMOTE_REGEX = re.compile(r"\b(?:heh|whew)\b", re.IGNORECASE)


class FillerCount(NamedTuple):
    """Running count of kept filler words and micro-emotes."""

    fillers: int = 0
    emotes: int = 0


def strip_fillers(
    text: str, count: FillerCount, max_fillers: int = 0, max_emotes: int = 0
) -> tuple[str, FillerCount]:
    """
    Remove filler words and micro-emotes beyond the given ceilings.

    Args:
        text: Narration text
        count: Fillers/emotes already kept before this text
        max_fillers: Ceiling on kept fillers (including count.fillers)
        max_emotes: Ceiling on kept emotes (including count.emotes)

    Returns:
        (cleaned text, updated count)
    """
    fillers, emotes = count.fillers, count.emotes

    def keep_filler(match: re.Match) -> str:
        nonlocal fillers
        if fillers >= max_fillers:
            return ""
        fillers += 1
        return match.group(0)

    def keep_like(match: re.Match) -> str:
        nonlocal fillers
        if fillers >= max_fillers:
            return match.group(1)
        fillers += 1
        return match.group(0)

    def keep_emote(match: re.Match) -> str:
        nonlocal emotes
        if emotes >= max_emotes:
            return ""
        emotes += 1
        return match.group(0)

    t = FILLER_WORD_REGEX.sub(keep_filler, str(text or ""))
    t = LIKE_FILLER_REGEX.sub(keep_like, t)
    t = MICRO_EMOTE_REGEX.sub(keep_emote, t)
    return cleanup_speech_text(t), FillerCount(fillers, emotes)


def limit_fillers_across_segments(
    texts: list[str],
    max_fillers: int = 0,
    max_fillers_per_segment: int = 0,
    max_emotes: int = 0,
    max_emotes_per_segment: int = 0,
    exempt_indices: Optional[set[int]] = None,
) -> list[str]:
    """
    Apply per-segment and whole-video filler ceilings as a left fold.

    Segments whose index is in exempt_indices keep no fillers at all.
    """
    exempt = exempt_indices or set()
    total = FillerCount()
    out = []
    for i, text in enumerate(texts):
        per_segment_fillers = 0 if i in exempt else max_fillers_per_segment
        local_text, local = strip_fillers(text, FillerCount(), per_segment_fillers, max_emotes_per_segment)
        remaining = FillerCount(
            fillers=max(0, max_fillers - total.fillers), emotes=max(0, max_emotes - total.emotes)
        )
        final_text, used = strip_fillers(local_text, FillerCount(), remaining.fillers, remaining.emotes)
        total = FillerCount(total.fillers + used.fillers, total.emotes + used.emotes)
        out.append(final_text)
    return out


def sanitize_segment_text(text: str) -> str:
    """Meta-strip and remove every filler; never returns an empty string."""
    cleaned, _ = strip_fillers(strip_meta_narration(text), FillerCount())
    return cleaned or "Quick update."


# ============================================================================
# Titles & labels
# ============================================================================


def clean_topic_label(text: str) -> str:
    t = re.sub(r"[\"'(){}\[\]]", "", str(text or ""))
    t = re.sub(r"\s+", " ", t)
    return re.sub(r"[.!?]+$", "", t).strip()


def short_topic_label(text: str, max_words: int = 4) -> str:
    """First max_words words of the cleaned label."""
    words = clean_topic_label(text).split()
    if not words:
        return "today's topic"
    return " ".join(words[:max_words])


def short_title_from_text(text: str) -> str:
    """Up to five words, punctuation removed."""
    t = re.sub(r"[\"'(){}\[\]]", "", str(text or ""))
    t = re.sub(r"[.,;:!?]+", " ", t)
    words = t.split()
    if not words:
        return "Quick Update"
    return " ".join(words[:5])


def format_topic_list(labels: list[str]) -> str:
    """Human list of up to three short labels."""
    short = [short_topic_label(label, 3) for label in labels if label]
    if not short:
        return "today's topic"
    if len(short) == 1:
        return short[0]
    if len(short) == 2:
        return f"{short[0]} and {short[1]}"
    return f"{short[0]}, {short[1]}, and {short[2]}"


# ============================================================================
# JSON replies
# ============================================================================


def strip_code_fence(text: str) -> str:
    t = str(text or "").strip()
    match = re.match(r"^```[a-zA-Z0-9]*\s*\n?(.*?)\n?```$", t, flags=re.DOTALL)
    return match.group(1).strip() if match else t


def parse_json_flexible(raw: str) -> Optional[Any]:
    """
    Parse a JSON object out of a free-form model reply.

    Strips markdown code fences, then falls back to the outermost {...} block.
    Returns None when nothing parses.
    """
    cleaned = strip_code_fence(raw)
    if not cleaned:
        return None
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        match = re.search(r"\{.*\}", cleaned, flags=re.DOTALL)
        if not match:
            return None
        try:
            return json.loads(match.group(0))
        except json.JSONDecodeError:
            return None

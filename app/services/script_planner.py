"""Script Planner - segment budgeting, script drafting and structural repairs."""

import math
import re
from typing import Any, Optional

from app.core.config import PipelineConfig
from app.models.schemas import Expression, Script, Segment, Topic
from app.services.narration_generator import NarrationGenerator
from app.utils.text_utils import (
    cleanup_speech_text,
    count_words,
    format_topic_list,
    limit_fillers_across_segments,
    sanitize_segment_text,
    short_title_from_text,
    short_topic_label,
    strip_meta_narration,
    truncate_to_word_cap,
)

FILLER_SEGMENT_TEXT = "Quick transition and here is the key detail you should watch."

NO_FILLER_SEGMENTS = {0, 1, 2}

TOPIC_TRANSITION_TEMPLATES = [
    "Alright, switching gears to {topic}. Here's the quick read.",
    "Next up: {topic}. Here's the key update.",
    "Now pivoting to {topic}. Here's what matters.",
    "Alright, moving on to {topic}. Here's the latest.",
    "Turning to {topic}. Here's the headline.",
]

TRANSITION_PREFIX = re.compile(
    r"^(and now|next up|now|alright|switching gears|turning to|moving on|pivoting)", re.IGNORECASE
)

BLOCKED_ENDINGS = {"and", "but", "so", "because", "with", "to", "for", "that"}
BLOCKED_ENDING_RE = re.compile(r"\b(and|but|so|because|with|to|for|that)\b[.!?,;:]*$", re.IGNORECASE)
TERMINAL_RE = re.compile(r"[.!?][\"')\]]?$")

EXPRESSION_KEYWORDS = [
    (("smile", "friendly", "happy", "joy"), Expression.WARM),
    (("serious", "concern", "sad", "sorrow", "grief"), Expression.SERIOUS),
    (("excite", "hype"), Expression.EXCITED),
    (("think", "reflect"), Expression.THOUGHTFUL),
]

COMPATIBLE_SHIFTS = {
    (Expression.WARM, Expression.THOUGHTFUL),
    (Expression.THOUGHTFUL, Expression.WARM),
}


# ============================================================================
# Budgeting
# ============================================================================


def compute_segment_count(target_seconds: float, config: PipelineConfig) -> int:
    """ceil(target / segment length), at least 2 (3 from 26s up), at most max_segments."""
    raw = math.ceil(max(0.0, target_seconds) / config.segment_target_seconds)
    minimum = 2 if target_seconds < 26 else 3
    return max(minimum, min(config.max_segments, raw))


def build_word_caps(segment_count: int, target_seconds: float, config: PipelineConfig) -> list[int]:
    """Evenly split word budget with a hook boost on the first segment and a trim on the last."""
    if segment_count <= 0:
        return []
    avg_seconds = target_seconds / segment_count
    caps = []
    for i in range(segment_count):
        boost = config.hook_boost if i == 0 else 1.0
        cut = config.wrap_up_cut if i == segment_count - 1 else 1.0
        words = avg_seconds * config.words_per_second * config.pace_bias * boost * cut
        caps.append(max(config.min_words_per_segment, int(math.floor(words + 0.5))))
    return caps


def allocate_topic_segments(segment_count: int, topic_count: int) -> list[tuple[int, int, int]]:
    """
    Split segments into contiguous per-topic ranges.

    Returns:
        (topic_index, first_segment, last_segment) per topic
    """
    topic_count = max(1, topic_count)
    base = max(1, segment_count // topic_count)
    remainder = max(0, segment_count - base * topic_count)
    ranges = []
    start = 0
    for ti in range(topic_count):
        count = base + (1 if remainder > 0 else 0)
        remainder = max(0, remainder - 1)
        end = min(segment_count - 1, start + count - 1)
        ranges.append((ti, start, end))
        start = end + 1
    return ranges


def topic_index_for_segment(index: int, ranges: list[tuple[int, int, int]]) -> int:
    for ti, start, end in ranges:
        if start <= index <= end:
            return ti
    return 0


# ============================================================================
# Expressions
# ============================================================================


def normalize_expression(raw: Any, mood: str = "neutral") -> Expression:
    """Map a free-form expression string onto the fixed vocabulary."""
    text = str(raw or "").strip().lower()
    try:
        return Expression(text)
    except ValueError:
        pass
    for keywords, expression in EXPRESSION_KEYWORDS:
        if any(k in text for k in keywords):
            return expression
    if mood == "serious":
        return Expression.SERIOUS
    if mood == "excited":
        return Expression.EXCITED
    return Expression.NEUTRAL


def smooth_expression_plan(expressions: list[Any], mood: str = "neutral") -> list[Expression]:
    """
    Hold the previous tag whenever the next one would jump between incompatible tags.

    Allowed changes: to or from neutral, and warm <-> thoughtful.
    """
    if not expressions:
        return []
    normalized = [normalize_expression(e, mood) for e in expressions]
    out = [normalized[0]]
    last = normalized[0]
    for nxt in normalized[1:]:
        allowed = (
            nxt == last
            or last == Expression.NEUTRAL
            or nxt == Expression.NEUTRAL
            or (last, nxt) in COMPATIBLE_SHIFTS
        )
        if allowed:
            last = nxt
        out.append(last)
    return out


# ============================================================================
# Structural repairs (pure text transforms)
# ============================================================================


def _label_for(segment: Segment, topics: list[Topic]) -> str:
    if segment.topic_label.strip():
        return segment.topic_label.strip()
    if 0 <= segment.topic_index < len(topics):
        return topics[segment.topic_index].label
    return ""


def ensure_topic_transitions(segments: list[Segment], topics: list[Topic]) -> list[Segment]:
    """Prefix a transition sentence on the first segment of every topic after the first."""
    out = []
    last_topic: Optional[int] = None
    for i, seg in enumerate(segments):
        label = _label_for(seg, topics)
        text = seg.text.strip()
        if i > 0 and seg.topic_index != last_topic and label:
            has_transition = bool(TRANSITION_PREFIX.match(text))
            mentions_topic = label.lower() in text.lower()
            if not (has_transition and mentions_topic):
                template = TOPIC_TRANSITION_TEMPLATES[abs(seg.topic_index + i) % len(TOPIC_TRANSITION_TEMPLATES)]
                text = f"{template.replace('{topic}', label)} {text}".strip()
        out.append(seg.model_copy(update={"topic_label": label, "text": cleanup_speech_text(text)}))
        last_topic = seg.topic_index
    return out


def enforce_word_caps(segments: list[Segment], caps: list[int]) -> list[Segment]:
    out = []
    for i, seg in enumerate(segments):
        cap = caps[i] if i < len(caps) else 22
        if count_words(seg.text) > cap:
            seg = seg.model_copy(update={"text": truncate_to_word_cap(seg.text, cap)})
        out.append(seg)
    return out


def engagement_question(label: str) -> str:
    short = short_topic_label(label, 3)
    return f"Thoughts on {short}?" if short else "What do you think?"


def ensure_topic_engagement_questions(
    segments: list[Segment], topics: list[Topic], caps: list[int]
) -> list[Segment]:
    """Append a short question to the last segment of each topic that lacks one, within its word cap."""
    last_by_topic = {seg.topic_index: i for i, seg in enumerate(segments)}
    out = []
    for i, seg in enumerate(segments):
        if last_by_topic.get(seg.topic_index) != i or "?" in seg.text:
            out.append(seg)
            continue
        question = engagement_question(_label_for(seg, topics))
        base = re.sub(r"[.!?]+[\"')\]]*$", "", seg.text.strip()).strip()
        cap = caps[seg.index] if 0 <= seg.index < len(caps) else None
        if cap:
            allowed = max(0, cap - count_words(question))
            words = base.split()
            if len(words) > allowed:
                base = " ".join(words[:allowed])
        combined = f"{base}. {question}" if base else question
        out.append(seg.model_copy(update={"text": cleanup_speech_text(combined)}))
    return out


def _ends_with_blocked_word(text: str) -> bool:
    stripped = re.sub(r"[\"')\]]+$", "", text.strip())
    stripped = re.sub(r"[.!?,;:]+$", "", stripped)
    words = stripped.split()
    return bool(words) and words[-1].lower() in BLOCKED_ENDINGS


def closing_phrase(mood: str) -> str:
    if mood == "serious":
        return "That's the key takeaway in this moment."
    return "That's the key takeaway right now."


def enforce_cta(text: str, mood: str) -> str:
    """Make sure the final segment asks for comments and a subscription exactly once."""
    t = text.strip() or "Quick final thought."
    has_subscribe = "subscribe" in t.lower()
    subscribe = "Subscribe for updates." if mood == "serious" else "Subscribe for more."
    if "?" in t:
        # keep only the final question mark
        t = re.sub(r"\?(?=[^?]*\?)", ".", t).strip()
        if has_subscribe:
            return t
        sep = "" if TERMINAL_RE.search(t) else "."
        return f"{t}{sep} {subscribe}"
    t = re.sub(r"[.!?]+[\"')\]]*$", "", t).strip() or "Quick final thought"
    if has_subscribe:
        return f"{t}. What do you think?"
    ask = "will you subscribe for updates?" if mood == "serious" else "will you subscribe for more?"
    return f"{t}. What do you think, and {ask}"


def enforce_segment_completeness(
    segments: list[Segment],
    mood: str = "neutral",
    include_cta: bool = False,
    caps: Optional[list[int]] = None,
) -> list[Segment]:
    """
    Repair dangling endings so every segment is a complete sentence.

    A trailing conjunction or open parenthesis is removed or closed and a closing
    phrase appended; terminal punctuation is always present. With caps the
    text before the closing phrase is trimmed so the repaired segment stays within
    its word cap. With include_cta the last segment also gets the comment/subscribe
    prompt.
    """
    out = []
    for i, seg in enumerate(segments):
        text = re.sub(r"\s+", " ", seg.text).strip()
        trailing_open = bool(re.search(r"[(\[{]$", text))
        blocked = _ends_with_blocked_word(text)

        if trailing_open:
            text = re.sub(r"[(\[{]\s*$", "", text).strip()
        if text.count("(") > text.count(")"):
            if TERMINAL_RE.search(text):
                text = re.sub(r"([.!?][\"')\]]*)$", r")\1", text)
            else:
                text = f"{text})"
        if blocked:
            text = BLOCKED_ENDING_RE.sub("", text).strip()

        if trailing_open or blocked or re.search(r"[,:;]$", text):
            phrase = closing_phrase(mood)
            base = text.rstrip(",:;").strip()
            cap = caps[seg.index] if caps and 0 <= seg.index < len(caps) else None
            if cap:
                words = base.split()
                allowed = max(0, cap - count_words(phrase))
                if len(words) > allowed:
                    base = BLOCKED_ENDING_RE.sub("", " ".join(words[:allowed])).strip().rstrip(",:;")
            text = f"{base} {phrase}".strip()
        if not TERMINAL_RE.search(text):
            text = f"{text}."
        if include_cta and i == len(segments) - 1:
            text = enforce_cta(text, mood)
        out.append(seg.model_copy(update={"text": text}))
    return out


def limit_fillers(segments: list[Segment]) -> list[Segment]:
    """Strip every filler and micro-emote; the first three segments are always filler-free."""
    texts = limit_fillers_across_segments(
        [s.text for s in segments], exempt_indices=NO_FILLER_SEGMENTS
    )
    return [s.model_copy(update={"text": t}) for s, t in zip(segments, texts)]


def smooth_segment_expressions(segments: list[Segment], mood: str) -> list[Segment]:
    smoothed = smooth_expression_plan([s.expression for s in segments], mood)
    return [s.model_copy(update={"expression": e}) for s, e in zip(segments, smoothed)]


def build_intro_line(topics: list[Topic], short_title: str = "") -> str:
    subject = short_topic_label(short_title, 4) if short_title else format_topic_list([t.label for t in topics])
    return sanitize_segment_text(f"Hi there. Quick update on {subject}.")


def build_outro_line(topics: list[Topic], short_title: str = "") -> str:
    labels = [t.label for t in topics]
    if len(labels) == 1:
        question = engagement_question(labels[0])
    elif labels:
        question = "Which topic stood out to you most?"
    else:
        question = engagement_question(short_title)
    line = f"{question} Thanks for watching. Like the video, and see you next time."
    if count_words(line) > 18:
        line = f"{question} Thanks for watching. Like the video. See you next time."
    return sanitize_segment_text(line)


# ============================================================================
# Planner
# ============================================================================


class ScriptPlanner:
    """Plans segment budgets, drafts a script and repairs its structure."""

    def __init__(self, config: PipelineConfig, logger: Any, generator: NarrationGenerator):
        """
        Initialize script planner.

        Args:
            config: Pipeline configuration
            logger: Logger instance
            generator: Narration generator collaborator
        """
        self.config = config
        self.logger = logger
        self.generator = generator

    def compute_segment_count(self, target_seconds: float) -> int:
        return compute_segment_count(target_seconds, self.config)

    def build_word_caps(self, segment_count: int, target_seconds: float) -> list[int]:
        return build_word_caps(segment_count, target_seconds, self.config)

    def parse_segments(
        self,
        reply: dict,
        topics: list[Topic],
        segment_count: int,
        ranges: list[tuple[int, int, int]],
        mood: str,
    ) -> list[Segment]:
        """
        Coerce a loosely-typed generator reply into exactly segment_count Segments.

        Missing or malformed fields fall back to the allocation plan; extra
        segments are dropped and missing ones padded with a neutral filler.
        """
        segments: list[Segment] = []
        for position, raw in enumerate(reply.get("segments") or []):
            if not isinstance(raw, dict):
                continue
            text = str(raw.get("text") or "").strip()
            if not text:
                continue
            index = len(segments)
            try:
                topic_index = int(raw.get("topicIndex"))
            except (TypeError, ValueError):
                topic_index = -1
            if not 0 <= topic_index < len(topics):
                topic_index = topic_index_for_segment(index, ranges)
            label = str(raw.get("topicLabel") or "").strip() or (
                topics[topic_index].label if topic_index < len(topics) else ""
            )
            cues = raw.get("overlayCues") if isinstance(raw.get("overlayCues"), list) else []
            segments.append(
                Segment(
                    index=index,
                    topic_index=topic_index,
                    topic_label=label,
                    text=text,
                    expression=normalize_expression(raw.get("expression"), mood),
                    overlay_cues=[c for c in cues if isinstance(c, dict)],
                )
            )

        segments = segments[:segment_count]
        while len(segments) < segment_count:
            index = len(segments)
            topic_index = topic_index_for_segment(index, ranges)
            segments.append(
                Segment(
                    index=index,
                    topic_index=topic_index,
                    topic_label=topics[topic_index].label if topic_index < len(topics) else "",
                    text=FILLER_SEGMENT_TEXT,
                )
            )
        return segments

    def repair(
        self,
        segments: list[Segment],
        topics: list[Topic],
        caps: list[int],
        mood: str,
        include_cta: bool = False,
    ) -> list[Segment]:
        """Apply every structural repair, in order, to an already-returned script."""
        segments = [s.model_copy(update={"text": strip_meta_narration(s.text) or s.text}) for s in segments]
        segments = ensure_topic_transitions(segments, topics)
        segments = enforce_word_caps(segments, caps)
        segments = ensure_topic_engagement_questions(segments, topics, caps)
        segments = enforce_segment_completeness(segments, mood, include_cta=include_cta, caps=caps)
        segments = limit_fillers(segments)
        segments = smooth_segment_expressions(segments, mood)
        return [s.model_copy(update={"text": sanitize_segment_text(s.text)}) for s in segments]

    def generate(
        self,
        topics: list[Topic],
        target_seconds: float,
        mood: str = "warm",
        language: str = "English",
        include_outro: bool = True,
    ) -> tuple[Script, list[int]]:
        """
        Draft and repair a script for the narration target.

        Args:
            topics: Ordered topics (at least one)
            target_seconds: Narration target, excluding intro/outro
            mood: Overall tone
            language: Narration language
            include_outro: When False the last segment carries the CTA itself

        Returns:
            (script, word caps)
        """
        topics = topics or [Topic(topic="today's topic")]
        segment_count = self.compute_segment_count(target_seconds)
        caps = self.build_word_caps(segment_count, target_seconds)
        ranges = allocate_topic_segments(segment_count, len(topics))

        self.logger.info(f"Planning {segment_count} segments for {target_seconds:.1f}s (caps={caps})")
        reply = self.generator.generate(
            topics=topics,
            segment_count=segment_count,
            word_caps=caps,
            topic_ranges=ranges,
            target_seconds=target_seconds,
            mood=mood,
            language=language,
        )

        segments = self.parse_segments(reply, topics, segment_count, ranges, mood)
        segments = self.repair(segments, topics, caps, mood, include_cta=not include_outro)

        title = str(reply.get("title") or "").strip() or topics[0].label
        short_title = str(reply.get("shortTitle") or "").strip() or short_title_from_text(title)
        self.logger.info(f"✅ Script ready: '{title}' ({len(segments)} segments)")
        return Script(title=title, short_title=short_title, segments=segments), caps

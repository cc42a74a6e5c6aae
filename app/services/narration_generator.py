"""Narration Generator - OpenAI-backed script drafting and duration-driven rewrites."""

from datetime import date
from typing import Any, Optional

from app.core.config import Settings
from app.models.schemas import Topic
from app.utils.backoff import BackoffExecutor
from app.utils.error_handler import ConfigurationError, PipelineError
from app.utils.text_utils import parse_json_flexible

STYLE_RULES = """
- Keep pacing steady and conversational; use contractions and punchy sentences.
- Sound like a real creator, not a press release.
- Each segment should be 1-2 sentences. Do NOT switch topics mid-sentence.
- Avoid filler words ("um", "uh", "ah", "like"), especially in segments 0-2.
- Do NOT add micro vocalizations ("heh", "whew", "hmm").
- Do NOT mention "intro", "outro", "segment", or say "in this video/clip".
- The FIRST segment of Topic 2+ must START with a transition line that names the topic.
- Each segment ends with a complete sentence. Never end with "and", "but", "so", "because", "with", "to", "for", "that".
- End the LAST segment of EACH topic with one short, topic-specific engagement question.
- Do NOT ask for likes or subscriptions; the closing line handles that.
""".strip()


class NarrationGenerator:
    """Drafts narration scripts and rescales them on request."""

    def __init__(self, settings: Settings, logger: Any, backoff: Optional[BackoffExecutor] = None):
        """
        Initialize narration generator.

        Args:
            settings: Application settings
            logger: Logger instance
            backoff: Retry wrapper for OpenAI calls
        """
        self.settings = settings
        self.logger = logger
        self.backoff = backoff or BackoffExecutor(logger)
        self._client = None

    def _get_client(self):
        """Get or create OpenAI client."""
        if self._client is None:
            from openai import OpenAI

            if not self.settings.openai_api_key:
                raise ConfigurationError("OpenAI API key not configured")
            self._client = OpenAI(api_key=self.settings.openai_api_key)
        return self._client

    def _complete_json(self, prompt: str, label: str) -> dict:
        def call() -> dict:
            response = self._get_client().chat.completions.create(
                model=self.settings.openai_model,
                messages=[{"role": "user", "content": prompt}],
            )
            content = response.choices[0].message.content or ""
            parsed = parse_json_flexible(content)
            if not isinstance(parsed, dict) or not isinstance(parsed.get("segments"), list):
                raise PipelineError(f"{label}: could not parse JSON segments from reply")
            return parsed

        return self.backoff.execute(call, label=label)

    def generate(
        self,
        topics: list[Topic],
        segment_count: int,
        word_caps: list[int],
        topic_ranges: list[tuple[int, int, int]],
        target_seconds: float,
        mood: str = "warm",
        language: str = "English",
    ) -> dict:
        """
        Ask the model for a draft script.

        Args:
            topics: Ordered topics
            segment_count: Exact number of segments wanted
            word_caps: Per-segment word caps
            topic_ranges: (topic_index, first_segment, last_segment) allocation
            target_seconds: Narration target, excluding intro/outro
            mood: Overall tone
            language: Narration language

        Returns:
            Loosely-typed reply: {"title", "shortTitle", "segments": [...]}
        """
        caps_line = ", ".join(f"#{i}: <= {c} words" for i, c in enumerate(word_caps))
        topic_lines = "\n".join(f"{i + 1}) {t.label}" for i, t in enumerate(topics))
        allocation = "\n".join(
            f"- Topic {ti + 1} ({topics[ti].label if ti < len(topics) else 'topic'}): segments {start}-{end}"
            for ti, start, end in topic_ranges
        )
        keyword_lines = "\n".join(
            f"Topic {i + 1}: {', '.join(t.keywords) or '(none)'}" for i, t in enumerate(topics)
        )

        prompt = f"""
Current date: {date.today().isoformat()}

Write a talking-head news brief script.
Language: {language}
Tone: {mood}

Topics in order (do NOT change order):
{topic_lines}

Segment allocation (follow exactly):
{allocation}

Target narration duration: ~{target_seconds:.1f}s
Segments: EXACTLY {segment_count}
Per-segment word caps: {caps_line}

Topic keywords:
{keyword_lines}

Rules:
{STYLE_RULES}
- For each segment include "expression" from: neutral, warm, serious, excited, thoughtful.
- Each segment includes exactly one overlayCues entry: a 2-6 word photo search query, startPct/endPct between 0.2 and 0.85.

Return JSON ONLY:
{{"title": "...", "shortTitle": "...", "segments": [{{"index": 0, "topicIndex": 0, "topicLabel": "...", "text": "...", "expression": "warm", "overlayCues": [{{"query": "...", "startPct": 0.25, "endPct": 0.75}}]}}]}}
""".strip()

        self.logger.info(f"Requesting script: {segment_count} segments, ~{target_seconds:.1f}s")
        return self._complete_json(prompt, "generate_script")

    def rewrite(
        self,
        segments: list[dict],
        target_seconds: float,
        adjust_pct: int,
        direction: str,
        word_caps: list[int],
    ) -> list[dict]:
        """
        Ask the model to lengthen or shorten an existing script.

        Args:
            segments: Current segments as dicts with index, text, expression, topicIndex, topicLabel
            target_seconds: Narration target
            adjust_pct: How much longer/shorter, in percent
            direction: "LONGER" or "SHORTER"
            word_caps: Rescaled per-segment word caps

        Returns:
            List of {"index", "text"} dicts
        """
        caps_line = ", ".join(f"#{i}: <= {c} words" for i, c in enumerate(word_caps))
        expressions_line = ", ".join(f"#{s['index']}: {s['expression']}" for s in segments)
        topics_line = ", ".join(
            f"#{s['index']}: topic {s['topicIndex']} ({s['topicLabel']})" for s in segments
        )
        script_lines = "\n".join(f"#{s['index']}: {s['text']}" for s in segments)

        prompt = f"""
Rewrite this script to better fit ~{target_seconds:.1f}s of spoken narration.
Make the script about {adjust_pct}% {direction} while keeping the same vibe.
Per-segment word caps (updated): {caps_line}
Expressions by segment (keep these expressions, only adjust text): {expressions_line}
Topic assignment by segment (do NOT change order): {topics_line}
Rules:
- Keep EXACTLY {len(segments)} segments.
{STYLE_RULES}
Return JSON ONLY: {{"segments": [{{"index": 0, "text": "..."}}]}}
Script:
{script_lines}
""".strip()

        self.logger.info(f"Requesting rewrite: {adjust_pct}% {direction}")
        parsed = self._complete_json(prompt, "rewrite_script")
        return parsed["segments"]

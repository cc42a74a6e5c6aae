"""Utility functions for the Narrated Video Factory."""

from app.utils.text_utils import count_words, estimate_spoken_duration, truncate_to_word_cap

__all__ = [
    "count_words",
    "estimate_spoken_duration",
    "truncate_to_word_cap",
]

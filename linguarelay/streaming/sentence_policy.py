# coding=utf-8
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Tuple

SENTENCE_TERMINATORS = ".!?。？！؟।‼⁇⁈⁉۔።"
_TOKEN_TRIM_PATTERN = re.compile(r"[\s.,;:!?。，、；：？！؟।‼⁇⁈⁉۔።\"'”’)\]）】》]+$")


def _words(text: str) -> List[str]:
    return str(text or "").lower().strip().split()


def _normalize_word(word: str) -> str:
    trimmed = _TOKEN_TRIM_PATTERN.sub("", word)
    return trimmed or word


def ends_sentence(text: str) -> bool:
    trimmed = str(text or "").strip()
    if not trimmed:
        return False
    return trimmed[-1] in SENTENCE_TERMINATORS


@dataclass(frozen=True)
class FragmentDecision:
    is_correction: bool
    is_complete: bool
    matched_words: int
    previous_words: int
    fragment_words: int


class SentencePolicy:
    """
    Classify one transcribed fragment against the fragment that preceded it.

    A fragment is a correction when it re-emits a longer version of the previous
    utterance: at least ``match_ratio`` of the previous words match position for
    position at its start and it carries more words, or the same words with more
    characters (e.g. only terminal punctuation was added).
    """

    def __init__(self, match_ratio: float = 0.7) -> None:
        self.match_ratio = min(1.0, max(0.0, float(match_ratio)))

    def is_correction(self, previous: str, fragment: str) -> bool:
        return self._classify(previous, fragment)[0]

    def _classify(self, previous: str, fragment: str) -> Tuple[bool, int, int, int]:
        prev_words = _words(previous)
        cur_words = _words(fragment)
        if not prev_words or not cur_words:
            return False, 0, len(prev_words), len(cur_words)
        if len(cur_words) < len(prev_words):
            return False, 0, len(prev_words), len(cur_words)

        matched = 0
        for prev_word, cur_word in zip(prev_words, cur_words):
            if _normalize_word(prev_word) == _normalize_word(cur_word):
                matched += 1

        longer = len(cur_words) > len(prev_words) or len(str(fragment).strip()) > len(str(previous).strip())
        correction = matched >= len(prev_words) * self.match_ratio and longer
        return correction, matched, len(prev_words), len(cur_words)

    def evaluate(self, *, previous: str, fragment: str) -> FragmentDecision:
        correction, matched, prev_count, cur_count = self._classify(previous, fragment)
        return FragmentDecision(
            is_correction=correction,
            is_complete=ends_sentence(fragment),
            matched_words=matched,
            previous_words=prev_count,
            fragment_words=cur_count,
        )

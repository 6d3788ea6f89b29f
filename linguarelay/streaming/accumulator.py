# coding=utf-8
from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional

from .sentence_policy import SentencePolicy

CONTEXT_WINDOW_SIZE = 5


def splice_correction(sentence_text: str, previous_fragment: str, corrected: str) -> str:
    """Replace the first occurrence of ``previous_fragment`` with ``corrected``.

    When the previous fragment is not part of the sentence the corrected
    fragment becomes the whole sentence.
    """
    sentence = str(sentence_text or "")
    prev = str(previous_fragment or "")
    if not sentence:
        return corrected
    if not prev or prev not in sentence:
        return corrected
    remainder = " ".join(sentence.replace(prev, "", 1).split())
    return f"{remainder} {corrected}" if remainder else corrected


@dataclass(frozen=True)
class CompletedSentence:
    segment_id: int
    source_text: str
    translated_text: str
    completed_at: float


@dataclass
class AccumulationState:
    """Per-session sentence state for continuous (realtime) mode."""

    source_language: str = "auto"
    target_language: str = "en"
    segment_counter: int = 0
    current_sentence_text: str = ""
    current_sentence_id: int = 0
    completed_sentences: List[CompletedSentence] = field(default_factory=list)
    last_fragment_text: str = ""
    context_window: Deque[str] = field(default_factory=lambda: deque(maxlen=CONTEXT_WINDOW_SIZE))
    awaiting_correction: bool = False
    detected_language: str = "auto"

    @classmethod
    def open(cls, source_language: str, target_language: str, context_window_size: int = CONTEXT_WINDOW_SIZE) -> "AccumulationState":
        return cls(
            source_language=source_language,
            target_language=target_language,
            context_window=deque(maxlen=max(1, int(context_window_size))),
        )

    def next_segment_id(self, requested: Optional[int] = None) -> int:
        self.segment_counter += 1
        if requested:
            return int(requested)
        return self.segment_counter

    def context_prompt(self, segments: int = 3) -> Optional[str]:
        if not self.context_window or segments <= 0:
            return None
        recent = list(self.context_window)[-segments:]
        return " ".join(recent)

    @property
    def has_open_sentence(self) -> bool:
        return bool(self.current_sentence_text)

    def snapshot(self) -> dict:
        return {
            "current_sentence_text": self.current_sentence_text,
            "current_sentence_id": self.current_sentence_id,
            "completed_count": len(self.completed_sentences),
            "completed_ids": [x.segment_id for x in self.completed_sentences],
            "last_fragment_text": self.last_fragment_text,
            "context_window": list(self.context_window),
        }


@dataclass(frozen=True)
class MergeOutcome:
    segment_id: int
    sentence_id: int
    fragment: str
    text: str
    is_correction: bool
    is_complete: bool
    is_empty: bool = False


class SentenceAccumulator:
    """
    Merge transcribed fragments into the open sentence of an AccumulationState.

    ``accept`` performs the merge and bookkeeping for one fragment; the caller
    translates ``outcome.text`` and then calls ``settle`` with the translation
    (or an empty string when translation failed) to finalize completed
    sentences. State is never touched for empty fragments.
    """

    def __init__(self, policy: Optional[SentencePolicy] = None, clock=time.time) -> None:
        self.policy = policy or SentencePolicy()
        self._clock = clock

    def accept(self, state: AccumulationState, fragment_text: str, segment_id: int) -> MergeOutcome:
        fragment = str(fragment_text or "").strip()
        if not fragment:
            return MergeOutcome(
                segment_id=segment_id,
                sentence_id=segment_id,
                fragment="",
                text="",
                is_correction=False,
                is_complete=False,
                is_empty=True,
            )

        decision = self.policy.evaluate(previous=state.last_fragment_text, fragment=fragment)

        if not decision.is_correction:
            state.context_window.append(fragment)

        if decision.is_correction:
            merged = splice_correction(state.current_sentence_text, state.last_fragment_text, fragment)
        elif state.current_sentence_text:
            merged = f"{state.current_sentence_text} {fragment}"
        else:
            merged = fragment

        state.last_fragment_text = fragment
        state.current_sentence_text = merged
        if not state.current_sentence_id:
            state.current_sentence_id = int(segment_id)
        state.awaiting_correction = not decision.is_complete

        return MergeOutcome(
            segment_id=segment_id,
            sentence_id=state.current_sentence_id,
            fragment=fragment,
            text=merged,
            is_correction=decision.is_correction,
            is_complete=decision.is_complete,
        )

    def settle(self, state: AccumulationState, outcome: MergeOutcome, translation: str) -> Optional[CompletedSentence]:
        if outcome.is_empty or not outcome.is_complete:
            return None
        return self._finalize(state, outcome.sentence_id, outcome.text, translation)

    def finalize_open(self, state: AccumulationState, translation: str) -> Optional[CompletedSentence]:
        if not state.current_sentence_text:
            return None
        return self._finalize(state, state.current_sentence_id, state.current_sentence_text, translation)

    def _finalize(self, state: AccumulationState, sentence_id: int, text: str, translation: str) -> CompletedSentence:
        sentence = CompletedSentence(
            segment_id=int(sentence_id),
            source_text=str(text),
            translated_text=str(translation or ""),
            completed_at=float(self._clock()),
        )
        state.completed_sentences.append(sentence)
        state.current_sentence_text = ""
        state.current_sentence_id = 0
        state.awaiting_correction = False
        return sentence

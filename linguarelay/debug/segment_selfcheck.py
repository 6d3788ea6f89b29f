from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List


def _lcp_len(a: str, b: str) -> int:
    n = min(len(a), len(b))
    i = 0
    while i < n and a[i] == b[i]:
        i += 1
    return i


@dataclass
class SegmentSelfcheckResult:
    partial_count: int
    final_count: int
    correction_count: int
    empty_count: int
    error_count: int
    completed_sentences: int
    duplicate_finals: int
    hard_rewrites: int
    examples: List[Dict[str, Any]]


def analyze_segment_events(events: Iterable[Dict[str, Any]]) -> SegmentSelfcheckResult:
    """
    Check a recorded stream of server events for sentence stability.

    Flags a sentence id finalized more than once and partial transcripts of the
    same open sentence that rewrite most of the previously shown text.
    """
    partial_count = 0
    final_count = 0
    corrections = 0
    empties = 0
    errors = 0
    duplicates = 0
    rewrites = 0
    finalized: Dict[int, int] = {}
    open_text: Dict[int, str] = {}
    examples: List[Dict[str, Any]] = []

    for idx, msg in enumerate(events):
        msg_type = str(msg.get("type", "")).lower()
        data = msg.get("data") or {}
        if msg_type == "error":
            errors += 1
            continue
        if msg_type != "segment_result":
            continue

        if data.get("error"):
            errors += 1
        if data.get("isEmpty"):
            empties += 1
            continue
        if data.get("isCorrection"):
            corrections += 1

        segment_id = int(data.get("segmentId", 0) or 0)
        text = str(data.get("transcript", "") or "").strip()

        prev_text = open_text.get(segment_id, "")
        if prev_text and len(prev_text) >= 20:
            lcp = _lcp_len(prev_text, text)
            if lcp < max(4, int(len(prev_text) * 0.25)):
                rewrites += 1
                if len(examples) < 8:
                    examples.append(
                        {
                            "kind": "hard_rewrite",
                            "index": idx,
                            "segment_id": segment_id,
                            "lcp": lcp,
                            "prev_chars": len(prev_text),
                            "text": text[:160],
                        }
                    )

        if data.get("isFinal"):
            final_count += 1
            open_text.pop(segment_id, None)
            finalized[segment_id] = finalized.get(segment_id, 0) + 1
            if finalized[segment_id] > 1:
                duplicates += 1
                if len(examples) < 8:
                    examples.append(
                        {"kind": "duplicate_final", "index": idx, "segment_id": segment_id, "text": text[:160]}
                    )
        else:
            partial_count += 1
            open_text[segment_id] = text

    return SegmentSelfcheckResult(
        partial_count=partial_count,
        final_count=final_count,
        correction_count=corrections,
        empty_count=empties,
        error_count=errors,
        completed_sentences=len(finalized),
        duplicate_finals=duplicates,
        hard_rewrites=rewrites,
        examples=examples,
    )


def summarize_result(result: SegmentSelfcheckResult) -> str:
    lines = [
        f"partials={result.partial_count}",
        f"finals={result.final_count}",
        f"corrections={result.correction_count}",
        f"empty={result.empty_count}",
        f"errors={result.error_count}",
        f"completed_sentences={result.completed_sentences}",
        f"duplicate_finals={result.duplicate_finals}",
        f"hard_rewrites={result.hard_rewrites}",
    ]
    if result.examples:
        lines.append("examples:")
        for ex in result.examples:
            kind = ex.get("kind", "event")
            lines.append(f"  - {kind}: {ex}")
    return "\n".join(lines)

from linguarelay.debug.segment_selfcheck import analyze_segment_events, summarize_result


def _result(segment_id, transcript, final=False, correction=False, **extra):
    data = {"segmentId": segment_id, "transcript": transcript, "isFinal": final, "isCorrection": correction}
    data.update(extra)
    return {"type": "segment_result", "data": data}


def test_analyze_segment_events_reports_clean_stream():
    events = [
        {"type": "pong", "data": {"message": "Connected successfully"}},
        {"type": "realtime_ready"},
        _result(1, "Hola"),
        _result(1, "Hola.", final=True, correction=True),
        _result(3, "", isEmpty=True),
        _result(4, "Gracias por venir"),
        _result(4, "Gracias por venir hoy.", final=True, correction=True),
        {"type": "session_ended", "data": {"completedSentences": 2}},
    ]
    result = analyze_segment_events(events)
    assert result.partial_count == 2
    assert result.final_count == 2
    assert result.correction_count == 2
    assert result.empty_count == 1
    assert result.completed_sentences == 2
    assert result.duplicate_finals == 0
    assert result.hard_rewrites == 0


def test_analyze_segment_events_detects_duplicate_final():
    events = [
        _result(1, "Done.", final=True),
        _result(1, "Done again.", final=True),
    ]
    result = analyze_segment_events(events)
    assert result.duplicate_finals == 1
    assert any(ex["kind"] == "duplicate_final" for ex in result.examples)


def test_analyze_segment_events_detects_hard_rewrite():
    events = [
        _result(2, "this is a fairly long partial sentence"),
        _result(2, "completely different words arrived"),
    ]
    result = analyze_segment_events(events)
    assert result.hard_rewrites == 1
    assert any(ex["kind"] == "hard_rewrite" for ex in result.examples)


def test_errors_are_counted_and_summarized():
    events = [
        {"type": "error", "data": {"code": "no_session"}},
        _result(1, "", error="Transcription failed"),
    ]
    result = analyze_segment_events(events)
    assert result.error_count == 2
    out = summarize_result(result)
    assert "errors=2" in out
    assert "duplicate_finals=0" in out

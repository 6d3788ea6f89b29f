from pathlib import Path

from tools.session_trace_report import _group_rows, _parse_session_rows, _summarize


def test_parse_session_rows_filters_and_parses(tmp_path: Path):
    p = tmp_path / "server.log"
    p.write_text(
        "\n".join(
            [
                'INFO linguarelay.streaming.protocol: session_trace {"topic":"session","event":"connected","conn_id":"c1","trace_seq":1}',
                'INFO linguarelay.streaming.protocol: session_trace {"topic":"other","event":"x"}',
                "INFO session_trace {broken json",
                "INFO uvicorn: started",
            ]
        ),
        encoding="utf-8",
    )
    rows = _parse_session_rows(p)
    assert len(rows) == 1
    assert rows[0]["event"] == "connected"


def test_summarize_groups_by_connection_and_session():
    rows = [
        {"topic": "session", "event": "session_started", "conn_id": "a", "session_id": "s1", "trace_seq": 1},
        {"topic": "session", "event": "segment_merged", "conn_id": "a", "session_id": "s1", "trace_seq": 2, "is_final": False},
        {
            "topic": "session",
            "event": "segment_merged",
            "conn_id": "a",
            "session_id": "s1",
            "trace_seq": 3,
            "is_final": True,
            "is_correction": True,
        },
        {"topic": "session", "event": "send", "conn_id": "a", "session_id": "s1", "trace_seq": 4, "type": "error", "code": "chunk_limit"},
    ]
    out = _summarize(_group_rows(rows))
    assert "groups=1" in out
    assert "session=s1" in out
    assert "segments=2" in out
    assert "finals=1" in out
    assert "corrections=1" in out
    assert "chunk_limit=1" in out

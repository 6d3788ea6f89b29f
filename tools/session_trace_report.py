#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import re
from collections import Counter, defaultdict
from pathlib import Path
from typing import Any, Dict, List, Tuple


SESSION_TRACE_RE = re.compile(r"session_trace\s+(\{.*\})\s*$")


def _parse_session_rows(path: Path) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    with path.open("r", encoding="utf-8", errors="replace") as f:
        for line in f:
            m = SESSION_TRACE_RE.search(line.strip())
            if not m:
                continue
            try:
                row = json.loads(m.group(1))
            except json.JSONDecodeError:
                continue
            if str(row.get("topic", "")) != "session":
                continue
            rows.append(row)
    return rows


def _group_rows(rows: List[Dict[str, Any]]) -> Dict[Tuple[str, str], List[Dict[str, Any]]]:
    grouped: Dict[Tuple[str, str], List[Dict[str, Any]]] = defaultdict(list)
    for row in rows:
        conn_id = str(row.get("conn_id", "unknown"))
        session_id = str(row.get("session_id", "") or "-")
        grouped[(conn_id, session_id)].append(row)
    return grouped


def _summarize(grouped: Dict[Tuple[str, str], List[Dict[str, Any]]]) -> str:
    lines: List[str] = [f"groups={len(grouped)}"]
    for (conn_id, session_id), rows in sorted(grouped.items()):
        rows_sorted = sorted(rows, key=lambda r: int(r.get("trace_seq", 0) or 0))
        merged = [r for r in rows_sorted if r.get("event") == "segment_merged"]
        finals = sum(1 for r in merged if r.get("is_final"))
        corrections = sum(1 for r in merged if r.get("is_correction"))
        errors = Counter(str(r.get("code")) for r in rows_sorted if r.get("event") == "send" and r.get("code"))
        last_event = str(rows_sorted[-1].get("event", "")) if rows_sorted else ""
        lines.append(
            f"[{conn_id}] session={session_id} rows={len(rows_sorted)} segments={len(merged)} "
            f"finals={finals} corrections={corrections} last_event={last_event}"
        )
        if errors:
            lines.append("  errors: " + ", ".join(f"{code}={n}" for code, n in sorted(errors.items())))
        for row in rows_sorted[-5:]:
            lines.append(
                "  - "
                f"seq={int(row.get('trace_seq', 0) or 0)} event={row.get('event', '')} "
                f"state={row.get('state', '')} type={row.get('type', '')}"
            )
    return "\n".join(lines)


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Summarize session_trace rows from a server log.")
    p.add_argument("--log", required=True, help="Path to server log file")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    rows = _parse_session_rows(Path(args.log).expanduser())
    print(_summarize(_group_rows(rows)))


if __name__ == "__main__":
    main()

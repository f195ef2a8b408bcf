from __future__ import annotations

from typing import Any, Dict, List, Optional


def table(headers: List[str], rows: List[List[str]], max_widths: Optional[Dict[int, int]] = None) -> str:
    """Format data as ASCII table."""
    if not rows:
        return "No data"

    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            if i < len(widths):
                widths[i] = max(widths[i], len(str(cell)))

    if max_widths:
        for i, max_w in max_widths.items():
            if i < len(widths):
                widths[i] = min(widths[i], max_w)

    header_line = "  ".join(h.ljust(widths[i]) for i, h in enumerate(headers))
    separator = "  ".join("-" * w for w in widths)
    row_lines = [
        "  ".join(str(cell)[: widths[i]].ljust(widths[i]) for i, cell in enumerate(row))
        for row in rows
    ]
    return "\n".join([header_line, separator] + row_lines)


def named_agents_table(agents: List[Dict[str, Any]]) -> str:
    rows = [[a["id"], a["name"], a["provider"], a["model"]] for a in agents]
    return table(["ID", "NAME", "PROVIDER", "MODEL"], rows)


def sessions_table(sessions: List[Dict[str, Any]]) -> str:
    rows = [
        [
            s["id"],
            s.get("epic_id") or "-",
            s.get("story_id") or "-",
            s["role"],
            s["status"],
            s["provider"],
            s.get("last_non_empty_text") or "",
        ]
        for s in sessions
    ]
    return table(
        ["ID", "EPIC", "STORY", "ROLE", "STATUS", "PROVIDER", "LAST OUTPUT"],
        rows,
        max_widths={6: 60},
    )


def busy_message(payload: Dict[str, Any]) -> str:
    """Render an AGENT_ALREADY_RUNNING response."""
    data = payload.get("data") or {}
    active = data.get("active_session") or {}
    return (
        f"{payload.get('error', 'Target busy.')} "
        f"Active session {data.get('active_session_id')} ({active.get('status', 'unknown')}) "
        f"at {data.get('session_url')}"
    )

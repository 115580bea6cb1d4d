from __future__ import annotations

from typing import Any


def _bool_mark(value: bool) -> str:
    return "yes" if value else "no"


def render_markdown(summary: dict[str, Any]) -> str:
    run = summary["run"]
    counts = summary["counts"]
    targets = summary["targets"]
    problems = summary["problems"]

    lines: list[str] = []
    lines.append("# Build Report")
    lines.append("")
    lines.append("## Run Overview")
    lines.append("")
    lines.append(f"- run_id: `{run['run_id']}`")
    lines.append(f"- goal: {run['goal'] or '(none)'}")
    lines.append(f"- status: **{run['status']}**")
    lines.append(f"- started: {run['created_at']}")
    lines.append(f"- ended: {run['updated_at']}")
    lines.append(f"- backend: {run['backend']} (max_parallel: {run['max_parallel']})")
    lines.append(f"- fail_fast: {_bool_mark(run['fail_fast'])}")
    lines.append(f"- force: {_bool_mark(run['force'])}")
    lines.append(f"- workdir: `{run['workdir']}`")
    lines.append(f"- cache: `{run['cache_dir']}`")
    lines.append(
        f"- built: {counts['built']}, skipped: {counts['skipped']}, failed: {counts['failed']}, "
        f"failed upstream: {counts['failed_upstream']}, canceled: {counts['canceled']}"
    )
    lines.append("")
    lines.append("## Target Results")
    lines.append("")
    lines.append("| name | kind | status | decision | attempts | retries | duration_sec | timed_out |")
    lines.append("|---|---|---|---|---:|---:|---:|---:|")
    for row in targets:
        lines.append(
            f"| {row['name']} | {row['kind']} | {row['status']} | {row['decision'] or '-'} | "
            f"{row['attempts']} | {row['retry_count']} | {row['duration_sec']} | "
            f"{row['timed_out']} |"
        )
    lines.append("")
    lines.append("## Failed / Canceled Details")
    lines.append("")
    if problems:
        for row in problems:
            lines.append(f"### {row['name']} ({row['status']})")
            if row["reason"]:
                lines.append(f"- reason: `{row['reason']}`")
            if row["error"]:
                lines.append(f"- error: {row['error']}")
            if row["retry_count"]:
                lines.append(f"- retries used: {row['retry_count']}")
            if row["status"] == "FAILED":
                lines.append("- stderr tail:")
                lines.append("```")
                lines.extend(row["stderr_tail"] or ["(empty)"])
                lines.append("```")
            lines.append("")
    else:
        lines.append("No failed or canceled targets.")
        lines.append("")
    return "\n".join(lines)

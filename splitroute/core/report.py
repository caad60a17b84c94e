from typing import List

from splitroute.core.models import SummaryItem


def format_report(summaries: List[SummaryItem], details: str) -> str:
    lines = ["SUMMARY"]
    if not summaries:
        lines.append("No data.")
    for item in summaries:
        lines.append(f"- {item.service}: {item.level.label} - {item.message}")
    lines.append("")
    lines.append("TECHNICAL DETAILS")
    lines.append(details or "(no output)")
    return "\n".join(lines)

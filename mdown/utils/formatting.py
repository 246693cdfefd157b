"""
Helper functions for formatting data into human-readable strings.
"""

from typing import Any


def format_size(bytes_size: float) -> str:
    """Formats bytes into a human-readable size string (e.g., '14.3 MB')."""
    if bytes_size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    i = 0
    while bytes_size >= 1024 and i < len(units) - 1:
        bytes_size /= 1024
        i += 1
    return f"{bytes_size:.1f} {units[i]}"


def format_duration(seconds: float) -> str:
    """Formats a duration in seconds, e.g. '1h 4m 12s'."""
    hours, remainder = divmod(int(seconds), 3600)
    minutes, secs = divmod(remainder, 60)
    parts = [f"{hours}h"] if hours else []
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def pick_localized(
    values: dict[str, str] | None,
    alternatives: list[dict[str, str]] | None = None,
    preferred: str = "en",
) -> str:
    """
    Picks a string from a catalog localized mapping such as {'en': ..., 'ja': ...}.

    The preferred language wins, then the same language among the alternatives,
    then whatever the primary mapping offers first.
    """
    values = values or {}
    if values.get(preferred):
        return values[preferred]
    for alt in alternatives or []:
        if alt.get(preferred):
            return alt[preferred]
    return next((v for v in values.values() if v), "")


def describe_statistics(manga_title: str, stats: dict[str, Any]) -> str:
    """Renders catalog statistics as a small Markdown document."""
    rating = stats.get("rating") or {}
    comments = stats.get("comments") or {}
    lines = [
        f"# {manga_title}",
        "",
        f"- Rating (average): {rating.get('average') or 'n/a'}",
        f"- Rating (bayesian): {rating.get('bayesian') or 'n/a'}",
        f"- Follows: {stats.get('follows', 'n/a')}",
        f"- Comments: {comments.get('repliesCount', 0)}",
    ]
    distribution = rating.get("distribution") or {}
    if distribution:
        lines += ["", "| Score | Votes |", "|---|---|"]
        for score in sorted(distribution, key=int, reverse=True):
            lines.append(f"| {score} | {distribution[score]} |")
    return "\n".join(lines) + "\n"

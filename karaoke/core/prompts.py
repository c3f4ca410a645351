"""
Prompt templates for Commit Karaoke.

Every model call in the pipeline asks for a single JSON object:
- search query: {"searchQuery": "..."}
- lyrics:       {"lyrics": "..."}
- title:        {"title": "..."}
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from karaoke.services.embeddings import RetrievedDocument
    from karaoke.services.github import CommitSummary

CONTEXT_SEPARATOR = "\n\n------\n\n"
TITLE_SOURCE_CHARS = 300


def _date(value) -> str:
    return value.date().isoformat() if value is not None else "unknown"


def search_query_system_prompt(summary: "CommitSummary") -> str:
    contributors = ", ".join(f"{a.name} ({a.count} commits)" for a in summary.authors[:3]) or "unknown"
    files = ", ".join(f"{f.filename} ({f.changes} changes)" for f in summary.most_changed_files[:5]) or "none"
    return (
        "You are an assistant specialized in analyzing code commits and writing short, plain-text "
        "queries for a vector database.\n"
        "You MUST respond in valid JSON only, without additional text.\n\n"
        "Repository context:\n"
        f"- Name: {summary.repository}\n"
        f"- Time period: {_date(summary.time_range_start)} to {_date(summary.time_range_end)}\n"
        f"- Total commits: {summary.commit_count}\n"
        f"- Top contributors: {contributors}\n"
        f"- Most changed files: {files}\n\n"
        "Return a JSON object with the structure:\n"
        '{"searchQuery": "short plain text describing the most interesting commits"}\n\n'
        "IMPORTANT:\n"
        '- Do NOT use search operators like "repo:", "author:" or "path:", or symbols such as "+".\n'
        '- Write natural English, e.g. "commits about bug fixes and significant features".'
    )


SEARCH_QUERY_USER_PROMPT = "Generate a plain text searchQuery in JSON for relevant commits."


def build_commit_context(documents: list["RetrievedDocument"]) -> str:
    """Join retrieved commit chunks into the context block for the lyrics prompt."""
    blocks = []
    for doc in documents:
        meta = doc.metadata
        header = [
            f"Commit: {meta.get('sha', '')}",
            f"Author: {meta.get('author', '')}",
            f"Date: {meta.get('date', '')}",
            f"Message: {meta.get('message', '')}",
        ]
        blocks.append("\n".join(header) + "\n\n" + doc.document)
    return CONTEXT_SEPARATOR.join(blocks)


def lyrics_system_prompt(commit_context: str) -> str:
    return (
        "You are a creative songwriter focusing on software development.\n"
        "You MUST respond in valid JSON only. No extra text.\n\n"
        "Write lyrics about these recent commits in the repository, referencing specific changes, "
        "using some technical terms, and capturing the emotional side of the work "
        "(frustration, triumph, late nights).\n\n"
        'Return a JSON object like: {"lyrics": "Full song lyrics here"}\n\n'
        "Important commits:\n"
        f"{commit_context}"
    )


def lyrics_user_prompt(style: str) -> str:
    return f"Write a {style} style song in JSON about these commits."


TITLE_SYSTEM_PROMPT = (
    "You are a creative title generator for songs about software development.\n"
    'Respond in valid JSON only, with structure: {"title": "Catchy short title"}'
)


def title_user_prompt(source_text: str) -> str:
    return (
        "Based on these lyrics, generate a short and catchy song title:\n"
        f'"{source_text[:TITLE_SOURCE_CHARS]}..."'
    )


def instrumental_prompt(style: str, repository: str) -> str:
    return f"A {style} song about code and software development in {repository}"


def cover_art_prompt(title: str, style: str) -> str:
    return (
        f'A playful, comic-style album cover illustrating the song title "{title}" '
        f"in a {style} music mood. No text or lettering in the image."
    )

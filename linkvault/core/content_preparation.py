"""Canonical text for a bookmark, as fed to the embedding provider."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from linkvault.core.models import Bookmark

PART_SEPARATOR = "\n\n"


@dataclass
class PreparedContent:
    text: str
    components: dict[str, str] = field(default_factory=dict)


def format_tags(tag_names: Sequence[str]) -> str:
    if not tag_names:
        return ""
    return "Tagged with: " + ", ".join(tag_names)


class ContentPreparationService:
    """Builds the embedding input for bookmarks and queries.

    Layout: title, user description, tag line, then (when an AI summary
    exists) the summary followed by the title twice more.
    """

    def prepare_content_for_embedding(self, bookmark: Bookmark, tag_names: Sequence[str]) -> PreparedContent:
        title = bookmark.title.strip()
        components = {"title": title, "tags": format_tags(tag_names)}

        description = (bookmark.user_description or "").strip()
        if description:
            components["user_description"] = description

        summary = (bookmark.ai_summary or "").strip()
        if summary:
            components["ai_summary"] = summary

        parts = [title]
        if description:
            parts.append(description)
        if components["tags"]:
            parts.append(components["tags"])
        if summary:
            parts.extend([summary, title, title])

        return PreparedContent(text=PART_SEPARATOR.join(parts), components=components)

    def prepare_query_for_embedding(self, query: str) -> str:
        return query.strip()

"""Bounding the search payload before it is sent to the AI provider."""

from typing import Any, Iterable, Mapping

MAX_RESULTS = 5
MAX_TITLE_CHARS = 200
MAX_CONTENT_CHARS = 2000


class PayloadTruncator:
    """
    Reduce search hits to what the AI prompt needs.

    Keeps the first ``max_results`` hits in order. Each hit becomes
    ``{title, url, content?, score?}`` where content is the first non-empty
    of the hit's ``content`` or ``snippet``.
    """

    def __init__(
        self,
        max_results: int = MAX_RESULTS,
        max_title_chars: int = MAX_TITLE_CHARS,
        max_content_chars: int = MAX_CONTENT_CHARS,
    ):
        self.max_results = max_results
        self.max_title_chars = max_title_chars
        self.max_content_chars = max_content_chars

    def truncate(self, results: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
        truncated = []
        for hit in list(results)[: self.max_results]:
            item: dict[str, Any] = {
                "title": str(hit.get("title") or "")[: self.max_title_chars],
                "url": hit.get("url") or "",
            }

            content = hit.get("content") or hit.get("snippet")
            if content:
                item["content"] = str(content)[: self.max_content_chars]

            if hit.get("score") is not None:
                item["score"] = hit["score"]

            truncated.append(item)
        return truncated

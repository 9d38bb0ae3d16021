"""HTML sanitizing for user-authored text messages."""

import re
from html import escape
from html.parser import HTMLParser
from typing import List, Optional, Tuple

ALLOWED_TAGS = frozenset({"p", "br", "b", "i", "u", "strong", "em"})
DROPPED_CONTENT_TAGS = frozenset({"script", "style"})
URL_PATTERN = re.compile(r"https?://[^\s<>\"']+")


def _linkify(text: str) -> str:
    """Escape ``text`` and wrap bare http(s) URLs in anchors."""
    parts: List[str] = []
    position = 0
    for match in URL_PATTERN.finditer(text):
        parts.append(escape(text[position : match.start()], quote=False))
        url = escape(match.group(0))
        parts.append(
            f'<a href="{url}" target="_blank" rel="noopener noreferrer">{url}</a>'
        )
        position = match.end()
    parts.append(escape(text[position:], quote=False))
    return "".join(parts)


class _AllowListParser(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.output: List[str] = []
        self._skip_depth = 0

    def handle_starttag(
        self, tag: str, attrs: List[Tuple[str, Optional[str]]]
    ) -> None:
        if tag in DROPPED_CONTENT_TAGS:
            self._skip_depth += 1
        elif tag in ALLOWED_TAGS and not self._skip_depth:
            # Attributes are never kept
            self.output.append(f"<{tag}>")

    def handle_startendtag(
        self, tag: str, attrs: List[Tuple[str, Optional[str]]]
    ) -> None:
        if tag in ALLOWED_TAGS and not self._skip_depth:
            self.output.append(f"<{tag}>")

    def handle_endtag(self, tag: str) -> None:
        if tag in DROPPED_CONTENT_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
        elif tag in ALLOWED_TAGS and tag != "br" and not self._skip_depth:
            self.output.append(f"</{tag}>")

    def handle_data(self, data: str) -> None:
        if not self._skip_depth:
            self.output.append(_linkify(data))


def sanitize_text(content: str) -> str:
    """Strip all markup except a small formatting allow-list and auto-link URLs."""
    parser = _AllowListParser()
    parser.feed(content)
    parser.close()
    return "".join(parser.output).strip()

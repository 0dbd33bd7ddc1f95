# kbase/core/utils/text_utils.py
import re
from html.parser import HTMLParser

_IMAGE_RE = re.compile(r"!\[[^\]]*\]\([^)]*\)")
_LINK_RE = re.compile(r"\[([^\]]*)\]\((?:[^()]|\([^)]*\))*\)")
_HTML_BLOCK_RE = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_HTML_TAG_RE = re.compile(r"</?[a-zA-Z][^>]*>")
_HTML_COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
_CJK_RE = re.compile(r"[\u3040-\u30ff\u3400-\u4dbf\u4e00-\u9fff\uac00-\ud7af]")


class _HTMLTextExtractor(HTMLParser):
    """HTML to text converter on top of the built-in html.parser."""

    def __init__(self):
        super().__init__()
        self._text_parts = []
        self._skip_data = False

    def handle_starttag(self, tag, attrs):
        if tag in ("script", "style"):
            self._skip_data = True
        elif tag in ("p", "div", "br", "li", "tr", "h1", "h2", "h3", "h4", "h5", "h6"):
            self._text_parts.append("\n")

    def handle_endtag(self, tag):
        if tag in ("script", "style"):
            self._skip_data = False
        elif tag in ("p", "div", "li", "tr", "h1", "h2", "h3", "h4", "h5", "h6"):
            self._text_parts.append("\n")

    def handle_data(self, data):
        if not self._skip_data:
            self._text_parts.append(data)

    def get_text(self) -> str:
        text = "".join(self._text_parts)
        text = re.sub(r"[ \t]+", " ", text)
        text = re.sub(r"\n{3,}", "\n\n", text)
        text = re.sub(r"^\s+", "", text, flags=re.MULTILINE)
        return text.strip()


def html_to_text(html: str) -> str:
    """
    Convert HTML to plain text.

    - Strips all HTML tags
    - Preserves paragraph/block structure as line breaks
    - Removes script/style content
    - Decodes HTML entities
    """
    if not html:
        return ""

    parser = _HTMLTextExtractor()
    parser.feed(html)
    parser.close()
    return parser.get_text()


def clean_markdown_for_ingest(markdown: str) -> str:
    """
    Strip non-semantic markup from markdown before it is chunked and indexed.

    Images are dropped, links keep only their anchor text, embedded HTML
    (comments, script/style blocks, tags) is removed and runs of blank lines
    collapse to a single paragraph break. Headings, lists and emphasis markers
    are left alone.
    """
    if not markdown:
        return ""

    text = markdown.replace("\r\n", "\n").replace("\r", "\n")
    text = _HTML_COMMENT_RE.sub("", text)
    text = _HTML_BLOCK_RE.sub("", text)
    text = _IMAGE_RE.sub("", text)
    text = _LINK_RE.sub(r"\1", text)
    text = _HTML_TAG_RE.sub("", text)
    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def count_words(text: str) -> int:
    """
    Word count used for reading-time estimates.

    Whitespace-separated tokens count as one word each; CJK characters, which
    are not space-delimited, count individually.
    """
    if not text:
        return 0
    cjk_count = len(_CJK_RE.findall(text))
    latin = _CJK_RE.sub(" ", text)
    return cjk_count + len(latin.split())

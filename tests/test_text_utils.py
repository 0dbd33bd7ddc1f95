"""Tests for ingestion text helpers."""

from kbase.core.utils.text_utils import clean_markdown_for_ingest, count_words, html_to_text


class TestCleanMarkdownForIngest:
    """Tests for clean_markdown_for_ingest."""

    def test_drops_images(self):
        assert clean_markdown_for_ingest("Intro ![logo](https://x/logo.png) text") == "Intro  text"

    def test_links_keep_anchor_text(self):
        assert clean_markdown_for_ingest("See [the docs](https://example.com/docs) now") == "See the docs now"

    def test_strips_html(self):
        markdown = "<!-- nav --><div>Body</div><script>alert(1)</script><style>p{}</style>"
        assert clean_markdown_for_ingest(markdown) == "Body"

    def test_collapses_blank_lines(self):
        assert clean_markdown_for_ingest("a\n\n\n\nb\r\n") == "a\n\nb"

    def test_keeps_headings_and_lists(self):
        markdown = "# Title\n\n- one\n- two"
        assert clean_markdown_for_ingest(markdown) == markdown

    def test_empty(self):
        assert clean_markdown_for_ingest("") == ""


class TestCountWords:
    """Tests for count_words."""

    def test_whitespace_words(self):
        assert count_words("hello brave  new\nworld") == 4

    def test_cjk_characters_count_individually(self):
        assert count_words("知识库") == 3

    def test_mixed(self):
        assert count_words("kbase 知识 base") == 4

    def test_empty(self):
        assert count_words("") == 0
        assert count_words("   ") == 0


class TestHtmlToText:
    """Tests for html_to_text."""

    def test_blocks_become_lines(self):
        assert html_to_text("<h1>Title</h1><p>First</p><p>Second</p>") == "Title\nFirst\nSecond"

    def test_entities_decoded(self):
        assert html_to_text("<p>a &amp; b</p>") == "a & b"

    def test_script_removed(self):
        assert html_to_text("<p>ok</p><script>var x = 1;</script>") == "ok"

"""Tests for forumrag.backends.content and forumrag.backends.images."""

from forumrag.backends.content import (
    MAX_CONTENT_CHARS,
    chunk_words,
    clean_body,
    content_fingerprint,
    prepare_post_content,
)
from forumrag.backends.images import HtmlImageFilter
from forumrag.core.types import TopicDocument, TopicPost


class TestContent:
    def test_clean_body_strips_markup_and_shortcodes(self):
        body = "<p>Hello&nbsp;<b>world</b></p>[quote]quoted[/quote]\n\n  again"
        assert clean_body(body) == "Hello world quoted again"

    def test_first_post_carries_title_at_both_ends(self):
        topic = TopicDocument(topic_id=1, title="Printer jams")
        post = TopicPost(post_id=1, body="It jams on page two", is_first_post=True)
        content = prepare_post_content(topic, post)
        assert content.startswith("Topic: Printer jams")
        assert content.endswith("Topic: Printer jams")
        assert "It jams on page two" in content

    def test_reply_has_no_title(self):
        topic = TopicDocument(topic_id=1, title="Printer jams")
        post = TopicPost(post_id=2, body="Try a new tray")
        assert prepare_post_content(topic, post) == "Try a new tray"

    def test_content_is_capped(self):
        topic = TopicDocument(topic_id=1)
        post = TopicPost(post_id=2, body="word " * 20000)
        assert len(prepare_post_content(topic, post)) == MAX_CONTENT_CHARS

    def test_fingerprint_depends_on_text_and_image_count(self):
        assert content_fingerprint("a") == content_fingerprint("a")
        assert content_fingerprint("a") != content_fingerprint("b")
        assert content_fingerprint("a", 0) != content_fingerprint("a", 1)
        assert len(content_fingerprint("a")) == 64

    def test_chunk_words_overlap(self):
        words = " ".join(str(n) for n in range(250))
        chunks = chunk_words(words, 100, 20)
        assert len(chunks) == 3
        assert chunks[0].split()[0] == "0"
        assert chunks[1].split()[0] == "80"
        assert chunks[-1].split()[-1] == "249"

    def test_chunk_words_empty(self):
        assert chunk_words("   ", 100, 20) == []


class TestHtmlImageFilter:
    def test_img_tag(self):
        f = HtmlImageFilter()
        assert f.extract_urls('<p><img class="x" src="https://a.test/p.png"></p>') == ["https://a.test/p.png"]

    def test_anchor_to_image(self):
        f = HtmlImageFilter()
        assert f.has_images('<a href="https://a.test/full.JPG">see</a>')
        assert not f.has_images('<a href="https://a.test/page.html">see</a>')

    def test_plain_url(self):
        f = HtmlImageFilter()
        assert f.extract_urls("look at https://a.test/cat.webp?size=2 please") == ["https://a.test/cat.webp?size=2"]

    def test_attachment_shortcode(self):
        f = HtmlImageFilter()
        assert f.attachment_ids("[attach]42[/attach]") == [42]
        assert f.has_images("see [attach]42[/attach]")

    def test_duplicates_collapse(self):
        f = HtmlImageFilter()
        html = '<a href="https://a.test/x.png"><img src="https://a.test/x.png"></a>'
        assert f.extract_urls(html) == ["https://a.test/x.png"]

    def test_text_without_images(self):
        f = HtmlImageFilter()
        assert f.has_images("just words") is False
        assert f.has_images("") is False

"""
Tests for candidate extraction from HTML, CSS and structured data.
"""

import json

from imgscan.content import (
    CandidateSet,
    collect_image_strings,
    css_urls,
    extract_candidates,
    iframe_sources,
    iter_signals,
)
from imgscan.models import (
    SOURCE_CSS_BACKGROUND,
    SOURCE_DOM_IMAGE,
    SOURCE_IFRAME,
    SOURCE_LAZY_ATTRIBUTE,
    SOURCE_METADATA,
    FetchStrategy,
    FrameDocument,
    PageContent,
)

PAGE_URL = "https://example.com/products/"


def page(html: str, **kwargs) -> PageContent:
    return PageContent(url=PAGE_URL, html=html, strategy=FetchStrategy.STATIC, **kwargs)


class TestCssUrls:
    """Tests for css_urls."""

    def test_quoted_and_bare_references(self):
        css = "a{background:url('/a.png')} b{background-image: url( \"b.jpg\" )} c{x:url(c.gif)}"
        assert css_urls(css) == ["/a.png", "b.jpg", "c.gif"]

    def test_import_rules(self):
        """Both import forms are reported once each."""
        assert css_urls('@import "theme.css"; @import url("print.css");') == [
            "print.css",
            "theme.css",
        ]

    def test_empty(self):
        assert css_urls("") == []


class TestSignals:
    """Each signal source is attributed correctly."""

    def test_all_signal_sources(self):
        ld = json.dumps({"@type": "Product", "image": ["/ld.webp"]})
        html = f"""
        <html><head>
          <meta property="og:image" content="https://example.com/og.jpg">
          <script type="application/ld+json">{ld}</script>
          <style>.hero {{ background: url(/hero.png) }}</style>
        </head><body>
          <img src="/dom.jpg" srcset="/dom-2x.jpg 2x">
          <picture><source srcset="/pic.webp 1x"></picture>
          <div data-src="/lazy.jpg"></div>
          <span style="background-image:url('/inline.gif')"></span>
        </body></html>
        """
        extraction = extract_candidates(page(html))
        sources = {c.url.rsplit("/", 1)[-1]: c.source for c in extraction.candidates}
        assert sources == {
            "dom.jpg": SOURCE_DOM_IMAGE,
            "dom-2x.jpg": SOURCE_DOM_IMAGE,
            "pic.webp": SOURCE_DOM_IMAGE,
            "lazy.jpg": SOURCE_LAZY_ATTRIBUTE,
            "inline.gif": SOURCE_CSS_BACKGROUND,
            "hero.png": SOURCE_CSS_BACKGROUND,
            "og.jpg": SOURCE_METADATA,
            "ld.webp": SOURCE_METADATA,
        }

    def test_first_lazy_attribute_wins(self):
        """Only the highest-priority lazy attribute of an element is used."""
        html = '<div data-lazy-src="/second.jpg" data-src="/first.jpg" data-bg="/third.jpg"></div>'
        signals = [raw for source, raw in iter_signals(html) if source == SOURCE_LAZY_ATTRIBUTE]
        assert signals == ["/first.jpg"]

    def test_nested_structured_data(self):
        ld = {
            "@graph": [
                {"@type": "Organization", "logo": {"url": "/not-picked.png"}},
                {"@type": "Product", "offers": {"image": {"url": "/nested.png"}}},
                {"thumbnailImage": "/thumb.jpg"},
            ]
        }
        html = f'<script type="application/ld+json">{json.dumps(ld)}</script>'
        signals = [raw for source, raw in iter_signals(html) if source == SOURCE_METADATA]
        assert signals == ["/nested.png", "/thumb.jpg"]

    def test_invalid_structured_data_is_skipped(self):
        html = '<script type="application/ld+json">{not json</script><img src="/ok.png">'
        extraction = extract_candidates(page(html))
        assert [c.url for c in extraction.candidates] == ["https://example.com/ok.png"]

    def test_extra_styles_are_scanned_once(self):
        """Stylesheets captured by the browser are merged with inline blocks."""
        css = ".a{background:url(/shared.png)}"
        html = f"<style>{css}</style>"
        extraction = extract_candidates(page(html, styles=[css, ".b{background:url(/extra.png)}"]))
        assert [c.url for c in extraction.candidates] == [
            "https://example.com/shared.png",
            "https://example.com/extra.png",
        ]
        assert extraction.total_found == 2


class TestCollectImageStrings:
    """Tests for collect_image_strings."""

    def test_only_strings_below_image_keys(self):
        found = []
        collect_image_strings({"name": "x", "images": [{"src": "a.png"}, "b.png"]}, found)
        assert found == ["a.png", "b.png"]


class TestDeduplication:
    """Dedup keeps the first signal that reported a URL."""

    def test_first_seen_attribution(self):
        html = """
        <meta property="og:image" content="/same.jpg">
        <div data-src="/same.jpg"></div>
        <img src="/same.jpg">
        """
        extraction = extract_candidates(page(html))
        assert len(extraction.candidates) == 1
        assert extraction.candidates[0].source == SOURCE_DOM_IMAGE
        assert extraction.total_found == 3
        assert extraction.unique_found == 1

    def test_duplicates_after_normalization(self):
        """URLs differing only in filtered query or fragment collapse."""
        html = """
        <img src="/a.jpg?utm=1">
        <img src="https://example.com/a.jpg#zoom">
        <img src="//example.com/a.jpg">
        """
        extraction = extract_candidates(page(html))
        assert [c.url for c in extraction.candidates] == ["https://example.com/a.jpg"]
        assert extraction.total_found == 3

    def test_rejected_strings_are_not_counted(self):
        html = '<img src="data:image/gif;base64,R0lGOD=="><img src="/page.html"><img src="/x.png">'
        extraction = extract_candidates(page(html))
        assert extraction.total_found == 1

    def test_order_and_by_source(self):
        html = '<img src="/1.jpg"><div data-src="/2.jpg"></div><img src="/3.jpg">'
        extraction = extract_candidates(page(html))
        assert [c.order for c in extraction.candidates] == [0, 1, 2]
        assert [c.url[-5:] for c in extraction.candidates] == ["1.jpg", "3.jpg", "2.jpg"]
        assert extraction.by_source() == {SOURCE_DOM_IMAGE: 2, SOURCE_LAZY_ATTRIBUTE: 1}

    def test_candidate_set_returns_existing(self):
        candidates = CandidateSet()
        first = candidates.add("/a.png", SOURCE_METADATA, PAGE_URL)
        second = candidates.add("https://example.com/a.png", SOURCE_DOM_IMAGE, PAGE_URL)
        assert first is second
        assert len(candidates) == 1
        assert candidates.total == 2


class TestIframes:
    """Iframe documents contribute candidates under their own signal."""

    def test_frame_images_are_tagged_and_resolved_against_frame(self):
        frame = FrameDocument(
            url="https://widgets.example.net/embed/gallery",
            html='<img src="pic.jpg"><div style="background:url(/bg.png)"></div>',
        )
        extraction = extract_candidates(page('<img src="/top.jpg">', frames=[frame]))
        assert [(c.url, c.source) for c in extraction.candidates] == [
            ("https://example.com/top.jpg", SOURCE_DOM_IMAGE),
            ("https://widgets.example.net/embed/pic.jpg", SOURCE_IFRAME),
            ("https://widgets.example.net/bg.png", SOURCE_IFRAME),
        ]

    def test_iframe_sources(self):
        html = """
        <iframe src="/embed/1"></iframe>
        <iframe src="about:blank"></iframe>
        <iframe src="https://other.example.org/x"></iframe>
        <iframe src="/embed/1"></iframe>
        <iframe></iframe>
        """
        assert iframe_sources(html, PAGE_URL, limit=10) == [
            "https://example.com/embed/1",
            "https://other.example.org/x",
        ]
        assert iframe_sources(html, PAGE_URL, limit=1) == ["https://example.com/embed/1"]

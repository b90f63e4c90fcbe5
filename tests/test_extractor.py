import pytest

from extractor import Dom, content, extract, illustration, reading_time, title


def test_dom_text():
    dom = Dom.from_text('<title>Hello World!</title>')
    assert dom.text() == 'Hello World!'


def test_dom_text_with_entities_and_utf8():
    dom = Dom.from_text('<title>Site d&#039;information français</title>')
    assert dom.text() == "Site d'information français"


def test_dom_select():
    dom = Dom.from_text('<html><head><title>Hello World!</title></head><body><p>Hello you!</p></body></html>')
    selected = dom.select('title')
    assert selected is not None
    assert selected.text() == 'Hello World!'


def test_dom_select_is_relative():
    dom = Dom.from_text("""
        <div>
            <p><a href="#">a link in a paragraph</a></p>
            <span><a href="#">a link in a span</a></span>
        </div>
    """)
    span = dom.select('span')
    link = span.select('a')
    assert link.text() == 'a link in a span'


def test_dom_select_returns_none_if_invalid():
    dom = Dom.from_text('<title>Hello World!</title>')
    assert dom.select('p[') is None
    assert dom.select_all('p[') == []


def test_dom_select_returns_none_if_no_match():
    dom = Dom.from_text('<title>Hello World!</title>')
    assert dom.select('p') is None


def test_dom_remove():
    dom = Dom.from_text('<html><body><p>Hello World!</p><div>Hello You!</div></body></html>')
    assert dom.remove('div') == 1
    assert dom.text() == 'Hello World!'


def test_dom_remove_root_node():
    dom = Dom.from_text('<html><body></body></html>')
    dom.remove('html')
    assert dom.text() == ''


def test_dom_remove_on_selection_does_not_alter_document():
    dom = Dom.from_text('<html><body><p>Hello World!</p><div>Hello You!</div></body></html>')
    body = dom.select('body')
    body.remove('div')

    assert 'Hello World!' in dom.text()
    assert 'Hello You!' in dom.text()
    assert body.text() == 'Hello World!'


@pytest.mark.parametrize("html, expected", [
    ('<html><head><meta property="og:title" content="OG title"><title>Page</title></head></html>', 'OG title'),
    ('<html><head><meta name="twitter:title" content="Tweet title"><title>Page</title></head></html>', 'Tweet title'),
    ('<html><head><title>  Page   title </title></head></html>', 'Page title'),
    ('<html><head></head><body><meta property="og:title" content="Body OG"></body></html>', 'Body OG'),
    ('<html><body><meta name="twitter:title" content="Body tweet"></body></html>', 'Body tweet'),
    ('<html><body><svg><title>Icon</title></svg><title>Real title</title></body></html>', 'Real title'),
    ('<html><body><svg><title>Icon</title></svg></body></html>', ''),
    ('<p>No title at all</p>', ''),
])
def test_title_heuristics(html, expected):
    assert title(Dom.from_text(html)) == expected


def test_title_prefers_og_over_twitter_and_title():
    html = """
        <html><head>
            <title>Plain</title>
            <meta name="twitter:title" content="Twitter">
            <meta property="og:title" content="OpenGraph">
        </head></html>
    """
    assert title(Dom.from_text(html)) == 'OpenGraph'


def test_title_skips_empty_og_title():
    html = '<html><head><meta property="og:title" content="  "><title>Fallback</title></head></html>'
    assert title(Dom.from_text(html)) == 'Fallback'


def test_content_prefers_main():
    html = """
        <html><body>
            <nav>Menu</nav>
            <main><p>The article.</p><script>track()</script></main>
        </body></html>
    """
    assert content(Dom.from_text(html)) == 'The article.'


def test_content_uses_main_id():
    html = '<html><body><header>Header</header><div id="main">Main text</div></body></html>'
    assert content(Dom.from_text(html)) == 'Main text'


def test_content_falls_back_to_body_without_scripts():
    html = '<html><body><p>Hello</p><script>var x = 1;</script><p>world</p></body></html>'
    assert content(Dom.from_text(html)) == 'Hello world'


def test_content_without_body_tag_uses_the_document():
    """The <body> tag is optional in HTML5; text outside the head still counts."""
    html = '<!DOCTYPE html><html><head><title>T</title></head><p>Hello world from a page</p></html>'
    assert content(Dom.from_text(html)) == 'Hello world from a page'

    fragment = '<title>Only a title</title><p>Loose</p><script>x()</script> text'
    assert content(Dom.from_text(fragment)) == 'Loose text'
    assert content(Dom.from_text('')) == ''


def test_illustration_is_absolutized_and_sanitized():
    html = '<html><head><meta property="og:image" content="/img/cover.png?utm_source=x"></head></html>'
    assert illustration(Dom.from_text(html), 'https://example.com/posts/1') == 'https://example.com/img/cover.png'


def test_illustration_fallbacks():
    twitter = '<html><body><meta name="twitter:image:src" content="https://cdn.example.com/t.jpg"></body></html>'
    assert illustration(Dom.from_text(twitter), 'https://example.com/') == 'https://cdn.example.com/t.jpg'

    image_src = '<html><head><link rel="image_src" href="thumb.jpg"></head></html>'
    assert illustration(Dom.from_text(image_src), 'https://example.com/a/') == 'https://example.com/a/thumb.jpg'

    assert illustration(Dom.from_text('<html><body></body></html>'), 'https://example.com/') == ''


def test_reading_time():
    assert reading_time('') == 0
    assert reading_time('word ' * 199) == 0
    assert reading_time('word ' * 200) == 1
    assert reading_time('word ' * 1000) == 5


def test_extract():
    html = """
        <html><head><title>A page</title><meta property="og:image" content="https://example.com/i.png"></head>
        <body><main>Some content here</main></body></html>
    """
    extracted = extract(html, 'https://example.com/page')
    assert extracted.title == 'A page'
    assert extracted.content == 'Some content here'
    assert extracted.illustration == 'https://example.com/i.png'
    assert extracted.reading_time == 0

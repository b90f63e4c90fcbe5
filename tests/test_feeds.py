import pytest

from errors import FeedParseError
from feeds import FeedEntry, FeedModel, is_feed_content_type, parse_feed

RSS = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>  Example blog </title>
    <link>https://example.com/</link>
    <description>Posts about things</description>
    <item>
      <title>First post</title>
      <link>https://example.com/first</link>
      <guid>tag:example.com,2021:1</guid>
      <pubDate>Mon, 06 Sep 2021 16:45:00 +0000</pubDate>
    </item>
    <item>
      <title>Second post</title>
      <link>/second</link>
    </item>
    <item>
      <title>No link here</title>
    </item>
  </channel>
</rss>
"""

ATOM = b"""<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Atom example</title>
  <subtitle>An Atom feed</subtitle>
  <link href="https://atom.example.com/" rel="alternate"/>
  <id>urn:uuid:feed</id>
  <updated>2021-09-06T16:45:00Z</updated>
  <entry>
    <title>Atom entry</title>
    <link href="https://atom.example.com/entry" rel="alternate"/>
    <id>urn:uuid:entry-1</id>
    <updated>2021-09-06T16:45:00Z</updated>
  </entry>
</feed>
"""


def test_parse_rss():
    feed = parse_feed(RSS)

    assert feed.title == 'Example blog'
    assert feed.description == 'Posts about things'
    assert feed.link == 'https://example.com/'
    # The entry without a link is dropped
    assert [entry.link for entry in feed.entries] == ['https://example.com/first', '/second']

    first, second = feed.entries
    assert first.title == 'First post'
    assert first.id == 'tag:example.com,2021:1'
    assert first.published == 1630946700
    assert second.id is None
    assert second.published is None


def test_parse_atom():
    feed = parse_feed(ATOM)

    assert feed.title == 'Atom example'
    assert feed.description == 'An Atom feed'
    assert feed.link == 'https://atom.example.com/'
    assert len(feed.entries) == 1
    assert feed.entries[0].id == 'urn:uuid:entry-1'
    assert feed.entries[0].published == 1630946700


@pytest.mark.parametrize("payload", [
    b"<html><body><p>Not a feed</p></body></html>",
    b"this is not xml at all",
    b"",
])
def test_parse_invalid_payload(payload):
    with pytest.raises(FeedParseError):
        parse_feed(payload)


def test_hash_is_stable_and_content_sensitive():
    assert parse_feed(RSS).hash() == parse_feed(RSS).hash()

    model = FeedModel(title='T', entries=[FeedEntry(link='https://example.com/a', title='A')])
    changed = FeedModel(title='T', entries=[FeedEntry(link='https://example.com/a', title='A (updated)')])
    assert model.hash() != changed.hash()


@pytest.mark.parametrize("content_type, expected", [
    ('application/rss+xml', True),
    ('application/atom+xml; charset=utf-8', True),
    ('application/rdf+xml', True),
    ('text/xml', True),
    ('Application/XML', True),
    ('text/html; charset=utf-8', False),
    ('application/json', False),
    ('', False),
    (None, False),
])
def test_is_feed_content_type(content_type, expected):
    assert is_feed_content_type(content_type) is expected

from differ import reconcile
from feeds import FeedEntry, FeedModel

FEED_URL = 'https://example.com/feed.xml'
NOW = 1_700_000_000


def feed_with(*entries):
    return FeedModel(title='Example', entries=list(entries))


def test_new_entries_are_created():
    feed = feed_with(
        FeedEntry(link='https://example.com/a', title=' Post A ', id='id-a', published=1_600_000_000),
        FeedEntry(link='/b', title='', id=None, published=None),
    )

    plan = reconcile(feed, FEED_URL, {}, {}, now=NOW)

    assert plan.renames == []
    assert [(c.url, c.title, c.created_at, c.feed_entry_id) for c in plan.creates] == [
        ('https://example.com/a', 'Post A', 1_600_000_000, 'id-a'),
        # Relative link, no title, no date, no id
        ('https://example.com/b', 'https://example.com/b', NOW, 'https://example.com/b'),
    ]


def test_known_urls_are_skipped():
    feed = feed_with(FeedEntry(link='https://example.com/a?utm_source=rss', title='A', id='id-a'))

    plan = reconcile(feed, FEED_URL, {'https://example.com/a': 12}, {}, now=NOW)

    assert plan.is_empty
    assert plan.skipped == 1


def test_changed_url_with_known_entry_id_is_renamed():
    feed = feed_with(FeedEntry(link='https://example.com/new-slug', title='Renamed', id='id-a', published=1_650_000_000))
    known_urls = {'https://example.com/old-slug': 7}
    known_entries = {'id-a': {'id': 7, 'url': 'https://example.com/old-slug'}}

    plan = reconcile(feed, FEED_URL, known_urls, known_entries, now=NOW)

    assert plan.creates == []
    assert len(plan.renames) == 1
    rename = plan.renames[0]
    assert rename.link_id == 7
    assert rename.url == 'https://example.com/new-slug'
    assert rename.title == 'https://example.com/new-slug'
    assert rename.created_at == 1_650_000_000


def test_duplicate_urls_in_one_feed_are_created_once():
    feed = feed_with(
        FeedEntry(link='https://example.com/a', title='A', id='1'),
        FeedEntry(link='https://example.com/a#again', title='A again', id='2'),
    )

    plan = reconcile(feed, FEED_URL, {}, {}, now=NOW)

    assert [c.title for c in plan.creates] == ['A']
    assert plan.skipped == 1


def test_as_params():
    feed = feed_with(FeedEntry(link='https://example.com/a', title='A', id='1', published=5))
    params = reconcile(feed, FEED_URL, {}, {}, now=NOW).as_params()
    assert params == {
        'creates': [{'url': 'https://example.com/a', 'title': 'A', 'created_at': 5, 'feed_entry_id': '1'}],
        'renames': [],
    }


def test_moved_entry_listed_twice_is_renamed_once():
    """A feed listing one known entry id under two new URLs renames the link to the first URL only."""
    feed = feed_with(
        FeedEntry(link='https://example.com/new-1', title='A', id='e1'),
        FeedEntry(link='https://example.com/new-2', title='A', id='e1'),
    )
    known_urls = {'https://example.com/old': 7}
    known_entries = {'e1': {'id': 7, 'url': 'https://example.com/old'}}

    plan = reconcile(feed, FEED_URL, known_urls, known_entries, now=NOW)

    assert plan.creates == []
    assert [(r.link_id, r.url) for r in plan.renames] == [(7, 'https://example.com/new-1')]
    assert plan.skipped == 1

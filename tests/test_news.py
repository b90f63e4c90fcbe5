import random

import pytest

from news import NewsOptions, NewsPicker, LONG_READS_OPTIONS, SHORT_READS_OPTIONS


async def setup_network(db):
    """Reader with bookmarks, a followed collection and a topic subscription."""
    reader = await db.execute('create_user', username='reader')
    author = await db.execute('create_user', username='author')
    bookmarks = await db.execute('get_bookmarks_collection_id', user_id=reader)

    await db.execute('create_link', user_id=reader, url='https://a.example.com/short',
                     collection_ids=[bookmarks], reading_time=3)
    await db.execute('create_link', user_id=reader, url='https://a.example.com/long',
                     collection_ids=[bookmarks], reading_time=25)
    await db.execute('create_link', user_id=reader, url='https://shared.example.com/',
                     collection_ids=[bookmarks], reading_time=5)

    followed = await db.execute('create_collection', user_id=author, name='Reads', is_public=True)
    await db.execute('follow_collection', user_id=reader, collection_id=followed)
    await db.execute('create_link', user_id=author, url='https://b.example.com/1',
                     collection_ids=[followed], reading_time=4)
    await db.execute('create_link', user_id=author, url='https://shared.example.com/',
                     collection_ids=[followed], reading_time=5)
    await db.execute('create_link', user_id=author, url='https://b.example.com/hidden',
                     collection_ids=[followed], is_hidden=True)

    tagged = await db.execute('create_collection', user_id=author, name='Python', is_public=True)
    topic = await db.execute('create_topic', label='python')
    await db.execute('attach_topic_to_collection', collection_id=tagged, topic_id=topic)
    await db.execute('attach_topic_to_user', user_id=reader, topic_id=topic)
    await db.execute('create_link', user_id=author, url='https://c.example.com/topic',
                     collection_ids=[tagged], reading_time=12)

    return reader, followed, tagged


@pytest.mark.asyncio
async def test_pools_are_ordered_and_deduplicated(db):
    """Bookmarks come first, then followed, then topics; a URL in two pools keeps its first provenance."""
    reader, followed, tagged = await setup_network(db)
    picker = NewsPicker(db, rng=random.Random(1))

    candidates = await picker.pick(reader, NewsOptions(number_links=20))

    via = [candidate.via_type for candidate in candidates]
    assert via == ['bookmarks'] * 3 + ['followed'] + ['topics']
    urls = [candidate.url for candidate in candidates]
    assert len(urls) == len(set(urls))
    assert 'https://b.example.com/hidden' not in urls

    shared = next(c for c in candidates if c.url == 'https://shared.example.com/')
    assert shared.via_type == 'bookmarks'
    assert shared.via_collection_id is None
    assert next(c for c in candidates if c.via_type == 'followed').via_collection_id == followed
    assert next(c for c in candidates if c.via_type == 'topics').via_collection_id == tagged


@pytest.mark.asyncio
async def test_number_links_bounds_the_selection(db):
    """Only the first number_links candidates are returned, starting with bookmarks."""
    reader, _, _ = await setup_network(db)
    picker = NewsPicker(db, rng=random.Random(2))

    candidates = await picker.pick(reader, NewsOptions(number_links=2))

    assert len(candidates) == 2
    assert all(candidate.via_type == 'bookmarks' for candidate in candidates)


@pytest.mark.asyncio
async def test_source_restriction(db):
    """from_='followed' covers both the followed and the topics pools."""
    reader, _, _ = await setup_network(db)
    picker = NewsPicker(db, rng=random.Random(3))

    bookmarks = await picker.pick(reader, NewsOptions(number_links=20, from_='bookmarks'))
    followed = await picker.pick(reader, NewsOptions(number_links=20, from_='followed'))

    assert {c.via_type for c in bookmarks} == {'bookmarks'}
    assert {c.via_type for c in followed} == {'followed', 'topics'}
    assert {c.url for c in followed} == {
        'https://b.example.com/1', 'https://shared.example.com/', 'https://c.example.com/topic',
    }


@pytest.mark.asyncio
async def test_reading_time_filters(db):
    """Short and long read presets filter bookmarks on reading time."""
    reader, _, _ = await setup_network(db)
    picker = NewsPicker(db, rng=random.Random(4))

    short = await picker.pick(reader, SHORT_READS_OPTIONS)
    long = await picker.pick(reader, LONG_READS_OPTIONS)

    assert {c.url for c in short} == {"https://a.example.com/short", "https://shared.example.com/"}
    assert all(c.link.reading_time <= 10 for c in short)
    assert [c.url for c in long] == ['https://a.example.com/long']


@pytest.mark.asyncio
async def test_remembered_urls_are_not_picked_again(db):
    """URLs placed in the news queue are excluded from the followed and topics pools."""
    reader, _, _ = await setup_network(db)
    picker = NewsPicker(db, rng=random.Random(5))
    options = NewsOptions(number_links=20, from_='followed')

    first = await picker.pick(reader, options)
    remembered = await picker.remember(reader, first)
    second = await picker.pick(reader, options)

    assert remembered == len(first) == 3
    assert second == []


@pytest.mark.asyncio
async def test_user_without_sources_gets_nothing(db):
    """A user with no bookmarks, follows or topics gets an empty selection."""
    loner = await db.execute('create_user', username='loner')
    picker = NewsPicker(db)

    assert await picker.pick(loner, NewsOptions()) == []
    assert await picker.remember(loner, []) == 0


def test_options_validation():
    with pytest.raises(ValueError):
        NewsOptions(from_='everywhere')
    with pytest.raises(ValueError):
        NewsOptions(number_links=-1)

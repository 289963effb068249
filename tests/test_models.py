import asyncio
import time

import pytest

from errors import StorageError


async def _feed(db, link='https://example.com/feed.xml', **kwargs):
    return await db.execute('create_feed', title=kwargs.get('title', 'Example'), description='',
                            link='https://example.com/', feed_link=link, folder_id=kwargs.get('folder_id'))


def _item(feed_id, guid, **kwargs):
    item = {'feed_id': feed_id, 'guid': guid, 'title': f"Title {guid}", 'link': f"https://example.com/{guid}",
            'content': f"<p>Body {guid}</p>", 'date': 1700000000}
    item.update(kwargs)
    return item


@pytest.mark.asyncio
async def test_create_feed_upserts_on_feed_link(db):
    folder = await db.execute('create_folder', title='News')
    first = await _feed(db)
    again = await _feed(db, folder_id=folder['id'])

    assert again['id'] == first['id']
    assert again['folder_id'] == folder['id']
    assert len(await db.execute('list_feeds')) == 1


@pytest.mark.asyncio
async def test_untitled_feed_uses_its_link_until_metadata_arrives(db):
    feed = await db.execute('create_feed', title='', description='', link='', feed_link='https://x.example/feed')
    assert feed['title'] == 'https://x.example/feed'

    await db.execute('fill_feed_metadata', feed_id=feed['id'], title='Real Title', link='https://x.example/')
    await db.execute('rename_feed', feed_id=feed['id'], title='My Name')
    await db.execute('fill_feed_metadata', feed_id=feed['id'], title='Other Title', link='https://y.example/')

    stored = await db.execute('get_feed', feed_id=feed['id'])
    assert stored['title'] == 'My Name'
    assert stored['link'] == 'https://x.example/'


@pytest.mark.asyncio
async def test_delete_feed_cascades_to_items_and_search(db):
    feed = await _feed(db)
    await db.execute('create_items', items=[_item(feed['id'], 'a'), _item(feed['id'], 'b')])
    assert await db.execute('sync_search') == 2

    assert await db.execute('delete_feed', feed_id=feed['id'])

    assert await db.execute('count_items') == 0
    assert db.conn.execute("SELECT COUNT(*) FROM search").fetchone()[0] == 0
    assert not await db.execute('delete_feed', feed_id=feed['id'])


@pytest.mark.asyncio
async def test_delete_folder_moves_feeds_to_top_level(db):
    folder = await db.execute('create_folder', title='Tech')
    feed = await _feed(db, folder_id=folder['id'])

    assert await db.execute('delete_folder', folder_id=folder['id'])

    assert (await db.execute('get_feed', feed_id=feed['id']))['folder_id'] is None


@pytest.mark.asyncio
async def test_http_state_and_errors(db):
    feed = await _feed(db)
    assert (await db.execute('get_http_state', feed_id=feed['id']))['etag'] is None

    await db.execute('set_http_state', feed_id=feed['id'], etag='"v1"', last_modified='Sat, 15 Nov 2025 16:00:00 GMT')
    await db.execute('set_feed_error', feed_id=feed['id'], error='timeout')

    state = await db.execute('get_http_state', feed_id=feed['id'])
    assert state['etag'] == '"v1"'
    assert state['last_refreshed'] > 0
    assert await db.execute('get_feed_errors') == {feed['id']: 'timeout'}

    await db.execute('set_feed_error', feed_id=feed['id'], error=None)
    assert await db.execute('get_feed_errors') == {}


@pytest.mark.asyncio
async def test_list_items_filters_search_and_pagination(db):
    folder = await db.execute('create_folder', title='Tech')
    one = await _feed(db, 'https://example.com/one.xml', folder_id=folder['id'])
    two = await _feed(db, 'https://example.com/two.xml')
    await db.execute('create_items', items=[
        _item(one['id'], 'a', date=100),
        _item(one['id'], 'b', date=200, title='Python release'),
        _item(two['id'], 'c', date=300),
    ])
    await db.execute('sync_search')

    newest = await db.execute('list_items', limit=2)
    assert [i['guid'] for i in newest] == ['c', 'b']
    page_two = await db.execute('list_items', limit=2, after=newest[-1]['id'])
    assert [i['guid'] for i in page_two] == ['a']

    in_folder = await db.execute('list_items', folder_id=folder['id'])
    assert {i['guid'] for i in in_folder} == {'a', 'b'}

    found = await db.execute('list_items', search='python')
    assert [i['guid'] for i in found] == ['b']

    await db.execute('update_item_status', item_id=newest[0]['id'], status='starred')
    starred = await db.execute('list_items', status='starred')
    assert [i['guid'] for i in starred] == ['c']

    assert await db.execute('mark_items_read', feed_id=one['id']) == 2
    assert await db.execute('list_items', status='unread') == []


@pytest.mark.asyncio
async def test_delete_old_items_keeps_unread_and_starred(db):
    feed = await _feed(db)
    await db.execute('create_items', items=[
        _item(feed['id'], 'old-read', status='read'),
        _item(feed['id'], 'old-starred', status='starred'),
        _item(feed['id'], 'old-unread'),
    ])
    three_days_ago = int(time.time()) - 3 * 86400
    db.conn.execute("UPDATE items SET date_arrived = ?", (three_days_ago,))
    db.conn.commit()
    await db.execute('create_items', items=[_item(feed['id'], 'new-read', status='read')])

    deleted = await db.execute('delete_old_items', retention_days=2)

    assert deleted == 1
    remaining = {row[0] for row in db.conn.execute("SELECT guid FROM items").fetchall()}
    assert remaining == {'old-starred', 'old-unread', 'new-read'}
    assert (await db.execute('get_feed', feed_id=feed['id']))['size'] == 3


@pytest.mark.asyncio
async def test_settings_round_trip(db):
    await db.execute('update_settings', values={'theme_name': 'night', 'refresh_rate': 30})
    await db.execute('update_settings', values={'refresh_rate': 15})

    assert await db.execute('get_settings') == {'theme_name': 'night', 'refresh_rate': 15}


@pytest.mark.asyncio
async def test_failed_operations_raise_storage_error(db):
    feed = await _feed(db)
    with pytest.raises(StorageError):
        await db.execute('update_item_status', item_id=1, status='archived')
    with pytest.raises(StorageError):
        await db.execute('no_such_operation')
    # Items of unknown feeds violate the foreign key
    with pytest.raises(StorageError):
        await db.execute('create_items', items=[_item(feed['id'] + 100, 'orphan')])


@pytest.mark.asyncio
async def test_worker_survives_out_of_range_ids(db):
    feed = await _feed(db)

    # sqlite3 raises OverflowError for integers beyond 64 bits
    with pytest.raises(StorageError):
        await db.execute('get_feed', feed_id=2 ** 70)
    with pytest.raises(StorageError):
        await db.execute('list_items', after=2 ** 70)

    feeds = await asyncio.wait_for(db.execute('list_feeds'), timeout=5)
    assert [f['id'] for f in feeds] == [feed['id']]
    assert not db.worker_task.done()

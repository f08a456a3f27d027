"""Link store tests: validation, aliases, bulk creation, counters, mutations."""

import asyncio
import datetime

import pytest
from sqlalchemy import select

from shortlinks.cache import lookup_key
from shortlinks.enums import LinkState
from shortlinks.exceptions import ConflictError, LinkValidationError, NotFoundError
from shortlinks.link_store import LinkStore, validate_destination
from shortlinks.models import Link
from shortlinks.schemas import LinkCreate
from shortlinks.timeutil import utcnow


async def click_count(session_factory, link_id: int) -> int:
    async with session_factory() as session:
        return await session.scalar(select(Link.click_count).where(Link.id == link_id))


@pytest.mark.parametrize(
    "url",
    [
        "ftp://example.com/file",
        "javascript:alert(1)",
        "https://",
        "not a url",
        "http://localhost:8000/admin",
        "http://api.localhost/",
        "http://127.0.0.1/x",
        "http://10.0.0.5/",
        "http://192.168.1.1/router",
        "http://169.254.169.254/latest/meta-data",
        "http://0.0.0.0/",
        "http://[::1]/",
    ],
)
def test_validate_destination_rejects(url: str) -> None:
    with pytest.raises(LinkValidationError):
        validate_destination(url)


@pytest.mark.parametrize(
    "url",
    ["https://example.com", "http://example.com/path?q=1#frag", "https://sub.domain.co.uk/a/b", "http://8.8.8.8/"],
)
def test_validate_destination_accepts(url: str) -> None:
    assert validate_destination(url) == url


@pytest.mark.asyncio
async def test_create_generated_code(store: LinkStore) -> None:
    link = await store.create(LinkCreate(url="https://example.com", title="Example"), owner_id="alice")

    assert len(link.short_code) == 6
    assert link.is_custom_alias is False
    assert link.owner_id == "alice"
    assert link.click_count == 0
    assert link.max_clicks == 0
    assert link.state == LinkState.ACTIVE
    assert link.password_hash is None


@pytest.mark.asyncio
async def test_create_hashes_password(store: LinkStore) -> None:
    link = await store.create(LinkCreate(url="https://example.com", password="hunter22"))
    assert link.password_hash is not None
    assert link.password_hash != "hunter22"
    assert link.password_hash.startswith("$2")


@pytest.mark.asyncio
async def test_custom_alias_is_lowercased_and_unique(store: LinkStore) -> None:
    link = await store.create(LinkCreate(url="https://example.com", customAlias="MyPromo"))
    assert link.short_code == "mypromo"
    assert link.is_custom_alias is True

    with pytest.raises(ConflictError):
        await store.create(LinkCreate(url="https://other.example.com", custom_alias="mypromo"))


@pytest.mark.asyncio
async def test_reserved_alias_is_rejected(store: LinkStore) -> None:
    with pytest.raises(LinkValidationError):
        await store.create(LinkCreate(url="https://example.com", custom_alias="health"))


@pytest.mark.asyncio
async def test_past_expiry_is_rejected(store: LinkStore) -> None:
    past = utcnow() - datetime.timedelta(minutes=1)
    with pytest.raises(LinkValidationError):
        await store.create(LinkCreate(url="https://example.com", expires_at=past))


@pytest.mark.asyncio
async def test_tombstoned_alias_stays_taken(store: LinkStore) -> None:
    link = await store.create(LinkCreate(url="https://example.com", custom_alias="gone-soon"))
    await store.soft_delete(link.id)

    assert await store.is_code_taken("gone-soon") is True
    with pytest.raises(ConflictError):
        await store.create(LinkCreate(url="https://example.com", custom_alias="gone-soon"))


@pytest.mark.asyncio
async def test_bulk_create_skips_taken_alias(store: LinkStore) -> None:
    await store.create(LinkCreate(url="https://example.com", custom_alias="taken"))

    result = await store.bulk_create(
        [
            LinkCreate(url="https://a.example.com"),
            LinkCreate(url="https://b.example.com", custom_alias="promo"),
            LinkCreate(url="https://c.example.com", custom_alias="taken"),
        ],
        owner_id="alice",
    )

    assert [link.short_code for link in result.created][1] == "promo"
    assert len(result.created) == 2
    assert len(result.skipped) == 1
    assert result.skipped[0].index == 2
    assert result.skipped[0].custom_alias == "taken"
    assert await store.is_code_taken("promo")


@pytest.mark.asyncio
async def test_bulk_create_skips_bad_items_individually(store: LinkStore) -> None:
    result = await store.bulk_create(
        [
            LinkCreate(url="http://localhost/"),
            LinkCreate(url="https://ok.example.com", custom_alias="twice"),
            LinkCreate(url="https://again.example.com", custom_alias="twice"),
            LinkCreate(url="https://docs.example.com", custom_alias="docs"),
            LinkCreate(url="https://late.example.com", expires_at=utcnow() - datetime.timedelta(days=1)),
        ]
    )

    assert [link.short_code for link in result.created] == ["twice"]
    assert [item.index for item in result.skipped] == [0, 2, 3, 4]


@pytest.mark.asyncio
async def test_bulk_create_enforces_item_limit(store: LinkStore, settings) -> None:
    items = [LinkCreate(url="https://example.com")] * (settings.BULK_CREATE_MAX_ITEMS + 1)
    with pytest.raises(LinkValidationError):
        await store.bulk_create(items)


@pytest.mark.asyncio
async def test_concurrent_increments_are_not_lost(store: LinkStore, session_factory, cache, settings) -> None:
    link = await store.create(LinkCreate(url="https://example.com"))

    async def bump() -> None:
        async with session_factory() as session:
            await LinkStore(session, cache, settings).increment_clicks(link.id)

    await asyncio.gather(*(bump() for _ in range(10)))

    assert await click_count(session_factory, link.id) == 10


@pytest.mark.asyncio
async def test_increment_unknown_link(store: LinkStore) -> None:
    with pytest.raises(NotFoundError):
        await store.increment_clicks(999_999)


@pytest.mark.asyncio
async def test_increment_invalidates_lookup(store: LinkStore, fake_redis) -> None:
    link = await store.create(LinkCreate(url="https://example.com"))
    fake_redis.strings[lookup_key(link.short_code)] = "{}"

    assert await store.increment_clicks(link.id) == link.short_code
    assert lookup_key(link.short_code) not in fake_redis.strings


@pytest.mark.asyncio
async def test_update_applies_allowed_fields_and_invalidates(store: LinkStore, fake_redis) -> None:
    link = await store.create(LinkCreate(url="https://example.com"))
    fake_redis.strings[lookup_key(link.short_code)] = "{}"

    updated = await store.update(link.id, {"title": "Renamed", "is_active": False, "max_clicks": None})

    assert updated.title == "Renamed"
    assert updated.is_active is False
    assert updated.max_clicks == 0
    assert lookup_key(link.short_code) not in fake_redis.strings


@pytest.mark.asyncio
async def test_update_rejects_unknown_fields_and_past_expiry(store: LinkStore) -> None:
    link = await store.create(LinkCreate(url="https://example.com"))

    with pytest.raises(LinkValidationError):
        await store.update(link.id, {"destination_url": "https://evil.example.com"})
    with pytest.raises(LinkValidationError):
        await store.update(link.id, {"expires_at": utcnow() - datetime.timedelta(hours=1)})
    with pytest.raises(LinkValidationError):
        await store.update(link.id, {"is_active": None})


@pytest.mark.asyncio
async def test_soft_delete_tombstones(store: LinkStore, fake_redis) -> None:
    link = await store.create(LinkCreate(url="https://example.com"))
    fake_redis.strings[lookup_key(link.short_code)] = "{}"

    await store.soft_delete(link.id)

    assert lookup_key(link.short_code) not in fake_redis.strings
    assert await store.find_by_id(link.id) is None
    assert await store.find_by_short_code(link.short_code) is None
    tombstone = await store.find_by_short_code(link.short_code, include_tombstoned=True)
    assert tombstone is not None
    assert tombstone.state == LinkState.TOMBSTONED
    assert tombstone.deleted_at is not None
    with pytest.raises(NotFoundError):
        await store.soft_delete(link.id)


@pytest.mark.asyncio
async def test_list_links_filters_by_owner_and_pages(store: LinkStore) -> None:
    for i in range(3):
        await store.create(LinkCreate(url=f"https://example.com/{i}"), owner_id="alice")
    await store.create(LinkCreate(url="https://example.com/bob"), owner_id="bob")

    links, total = await store.list_links("alice", page=1, limit=2)
    assert total == 3
    assert len(links) == 2
    assert all(link.owner_id == "alice" for link in links)

    links, total = await store.list_links("alice", page=2, limit=2)
    assert len(links) == 1

    _, total = await store.list_links(None)
    assert total == 4

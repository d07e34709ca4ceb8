import asyncio

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from beanie import init_beanie
from mongomock_motor import AsyncMongoMockClient
from pymongo.errors import DuplicateKeyError

from conftest import fast_bcrypt
from models.security import RefreshToken
from models.users import User
from schema.security import RefreshTokenRecord
from security.refresh_token import SessionStore
from services.errors import PersistenceUnavailable, SessionNotFound
from services.storage import BeaniePrincipalDirectory, BeanieRefreshTokenRepository

ISSUED_AT = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_record(principal_id: str, token_hash: str) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        token_hash=token_hash,
        principal_id=principal_id,
        expires_at=ISSUED_AT + timedelta(days=15),
        created_at=ISSUED_AT,
    )


class RacingRepository(BeanieRefreshTokenRepository):
    """Another writer inserts a record for the same principal right before our first insert."""

    def __init__(self, competitor: RefreshTokenRecord):
        self.competitor = competitor
        self.attempts = 0

    async def _upsert(self, record):
        self.attempts += 1
        if self.attempts == 1:
            await RefreshToken(**self.competitor.model_dump()).insert()
            raise DuplicateKeyError("E11000 duplicate key error collection: refresh_tokens index: principal_id_1")
        await super()._upsert(record)


class AlwaysConflictingRepository(BeanieRefreshTokenRepository):
    def __init__(self):
        self.attempts = 0

    async def _upsert(self, record):
        self.attempts += 1
        raise DuplicateKeyError("E11000 duplicate key error")


@pytest.fixture
async def mongo():
    client = AsyncMongoMockClient()
    await init_beanie(database=client[f"turnstile_{uuid4().hex}"], document_models=[User, RefreshToken])
    return client


async def test_replace_supersedes_previous_record(mongo):
    repository = BeanieRefreshTokenRepository()

    await repository.replace_for_principal(make_record("p1", "hash-1"))
    await repository.replace_for_principal(make_record("p1", "hash-2"))

    assert await repository.find_by_hash("hash-1") is None
    assert (await repository.find_by_hash("hash-2")).principal_id == "p1"
    assert await repository.count_for_principal("p1") == 1


async def test_records_of_different_principals_coexist(mongo):
    repository = BeanieRefreshTokenRepository()

    await repository.replace_for_principal(make_record("p1", "hash-1"))
    await repository.replace_for_principal(make_record("p2", "hash-2"))

    assert (await repository.find_by_hash("hash-1")).principal_id == "p1"
    assert (await repository.find_by_hash("hash-2")).principal_id == "p2"


async def test_found_record_has_utc_datetimes(mongo):
    repository = BeanieRefreshTokenRepository()
    await repository.replace_for_principal(make_record("p1", "hash-1"))

    record = await repository.find_by_hash("hash-1")

    assert record.expires_at.tzinfo is not None
    assert record.expires_at.replace(tzinfo=None) == (ISSUED_AT + timedelta(days=15)).replace(tzinfo=None)


async def test_unique_principal_index_rejects_second_insert(mongo):
    await RefreshToken(**make_record("p1", "hash-1").model_dump()).insert()

    with pytest.raises(DuplicateKeyError):
        await RefreshToken(**make_record("p1", "hash-2").model_dump()).insert()


async def test_lost_insert_race_retries_as_update(mongo):
    repository = RacingRepository(competitor=make_record("p1", "their-hash"))

    await repository.replace_for_principal(make_record("p1", "our-hash"))

    assert repository.attempts == 2
    assert await repository.find_by_hash("their-hash") is None
    assert (await repository.find_by_hash("our-hash")).principal_id == "p1"
    assert await repository.count_for_principal("p1") == 1


async def test_second_conflict_fails_closed(mongo):
    repository = AlwaysConflictingRepository()
    store = SessionStore(repository)

    with pytest.raises(PersistenceUnavailable):
        await store.create("p1")
    assert repository.attempts == 2


async def test_session_store_on_mongo_keeps_one_live_token(mongo):
    repository = BeanieRefreshTokenRepository()
    store = SessionStore(repository)

    issued = await asyncio.gather(*[store.create("p1") for _ in range(10)])

    assert await repository.count_for_principal("p1") == 1
    valid = 0
    for token in issued:
        try:
            await store.validate(token.token)
            valid += 1
        except SessionNotFound:
            pass
    assert valid == 1


async def test_delete_by_hash(mongo):
    repository = BeanieRefreshTokenRepository()
    await repository.replace_for_principal(make_record("p1", "hash-1"))

    assert await repository.delete_by_hash("hash-1")
    assert not await repository.delete_by_hash("hash-1")
    assert await repository.count_for_principal("p1") == 0


async def test_principal_directory_lookups(mongo):
    user = User(
        name="Ada Lovelace",
        email="ada@example.com",
        tax_id="12345678000199",
        password=fast_bcrypt.hash("secret"),
    )
    await user.insert()
    directory = BeaniePrincipalDirectory()

    by_email = await directory.find_by_identifier("ada@example.com")
    by_tax_id = await directory.find_by_identifier("12345678000199")

    assert by_email.id == by_tax_id.id == str(user.id)
    assert by_email.password_hash == user.password
    assert await directory.find_by_identifier("nobody@example.com") is None
    assert (await directory.get_by_id(str(user.id))).email == "ada@example.com"
    assert await directory.get_by_id("not-an-object-id") is None

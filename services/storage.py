"""Persistence collaborators used by the auth core.

The core only needs two things from the outside world: a way to look up a
principal by identifier or id, and somewhere to keep refresh token records.
Both come in a MongoDB flavour (Beanie documents) and an in-memory flavour
used for local development and tests.
"""

import asyncio
import threading

import logfire
import pytz

from datetime import datetime
from typing import Awaitable, Dict, Optional, Protocol, TypeVar

from beanie import PydanticObjectId
from beanie.operators import Set
from bson.errors import InvalidId
from pymongo.errors import DuplicateKeyError

from models.helpers import IdentifierType
from models.security import RefreshToken
from models.users import User
from schema.security import RefreshTokenRecord
from schema.users import Principal
from services.errors import PersistenceUnavailable, ServiceError

T = TypeVar("T")


def identifier_type(identifier: str) -> IdentifierType:
    """Emails contain an `@`; anything else is treated as a tax id."""
    return IdentifierType.EMAIL if "@" in identifier else IdentifierType.TAX_ID


async def call_with_timeout(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    """Await a collaborator call, bounded by `timeout` seconds.

    Any failure other than our own service errors is logged and turned into
    `PersistenceUnavailable`, so callers fail closed instead of leaking
    driver errors.

    Args:
        awaitable (Awaitable[T]): The collaborator call.
        timeout (float): Upper bound in seconds.
        operation (str): Short name used in log lines.

    Raises:
        PersistenceUnavailable: Raised on timeout or collaborator failure.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except ServiceError:
        raise
    except asyncio.TimeoutError:
        logfire.error(f"Persistence call '{operation}' timed out after {timeout}s")
        raise PersistenceUnavailable() from None
    except Exception as e:
        logfire.error(f"Persistence call '{operation}' failed: {type(e).__name__}")
        raise PersistenceUnavailable() from e


class PrincipalDirectory(Protocol):
    """Read only lookup of principals."""

    async def find_by_identifier(self, identifier: str) -> Optional[Principal]: ...

    async def get_by_id(self, principal_id: str) -> Optional[Principal]: ...


class RefreshTokenRepository(Protocol):
    """Storage for refresh token records, keyed by token hash and by principal."""

    async def replace_for_principal(self, record: RefreshTokenRecord) -> None:
        """Atomically delete any record for `record.principal_id` and store `record`."""
        ...

    async def find_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]: ...

    async def delete_by_hash(self, token_hash: str) -> bool: ...

    async def count_for_principal(self, principal_id: str) -> int: ...


def _as_utc(value: datetime) -> datetime:
    # Mongo hands back naive datetimes unless the client is tz aware
    if value.tzinfo is None:
        return value.replace(tzinfo=pytz.utc)
    return value


def _user_to_principal(user: User) -> Principal:
    return Principal(
        id=str(user.id),
        name=user.name,
        email=user.email,
        tax_id=user.tax_id,
        password_hash=user.password,
        is_active=user.is_active,
    )


class BeaniePrincipalDirectory:
    """Looks principals up in the `users` collection."""

    async def find_by_identifier(self, identifier: str) -> Optional[Principal]:
        if identifier_type(identifier) == IdentifierType.EMAIL:
            user = await User.find_one(User.email == identifier)
        else:
            user = await User.find_one(User.tax_id == identifier)

        return _user_to_principal(user) if user else None

    async def get_by_id(self, principal_id: str) -> Optional[Principal]:
        try:
            object_id = PydanticObjectId(principal_id)
        except (InvalidId, TypeError):
            return None

        user = await User.get(object_id)
        return _user_to_principal(user) if user else None


class BeanieRefreshTokenRepository:
    """Refresh tokens in the `refresh_tokens` collection.

    The unique index on `principal_id` makes the upsert in
    `replace_for_principal` the single atomic step that supersedes an older
    record. Two racing inserts for a brand new principal can collide on that
    index; the loser retries once as an update.
    """

    async def replace_for_principal(self, record: RefreshTokenRecord) -> None:
        for attempt in range(2):
            try:
                await self._upsert(record)
                return
            except DuplicateKeyError:
                if attempt:
                    raise
                logfire.debug(f"Concurrent refresh token insert for principal {record.principal_id}, retrying")

    async def _upsert(self, record: RefreshTokenRecord) -> None:
        # Update the principal's record if there is one, otherwise insert
        await RefreshToken.find_one(RefreshToken.principal_id == record.principal_id).upsert(
            Set(
                {
                    RefreshToken.token_hash: record.token_hash,
                    RefreshToken.expires_at: record.expires_at,
                    RefreshToken.created_at: record.created_at,
                }
            ),
            on_insert=RefreshToken(**record.model_dump()),
        )

    async def find_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        document = await RefreshToken.find_one(RefreshToken.token_hash == token_hash)
        if not document:
            return None

        return RefreshTokenRecord(
            token_hash=document.token_hash,
            principal_id=document.principal_id,
            expires_at=_as_utc(document.expires_at),
            created_at=_as_utc(document.created_at),
        )

    async def delete_by_hash(self, token_hash: str) -> bool:
        result = await RefreshToken.find(RefreshToken.token_hash == token_hash).delete()
        return bool(result and result.deleted_count)

    async def count_for_principal(self, principal_id: str) -> int:
        return await RefreshToken.find(RefreshToken.principal_id == principal_id).count()


class InMemoryPrincipalDirectory:
    """Principals held in a dict. For development and tests."""

    def __init__(self):
        self._principals: Dict[str, Principal] = {}
        self._lock = threading.Lock()

    def add(self, principal: Principal) -> Principal:
        with self._lock:
            self._principals[principal.id] = principal
        return principal

    async def find_by_identifier(self, identifier: str) -> Optional[Principal]:
        field = "email" if identifier_type(identifier) == IdentifierType.EMAIL else "tax_id"
        with self._lock:
            for principal in self._principals.values():
                if getattr(principal, field) == identifier:
                    return principal
        return None

    async def get_by_id(self, principal_id: str) -> Optional[Principal]:
        with self._lock:
            return self._principals.get(principal_id)


class InMemoryRefreshTokenRepository:
    """Refresh tokens held in two dicts under one lock.

    There is no await inside the locked sections, so delete then insert for
    one principal is a single indivisible step.
    """

    def __init__(self):
        self._by_hash: Dict[str, RefreshTokenRecord] = {}
        self._hash_by_principal: Dict[str, str] = {}
        self._lock = threading.Lock()

    async def replace_for_principal(self, record: RefreshTokenRecord) -> None:
        with self._lock:
            previous = self._hash_by_principal.pop(record.principal_id, None)
            if previous is not None:
                self._by_hash.pop(previous, None)
            self._by_hash[record.token_hash] = record
            self._hash_by_principal[record.principal_id] = record.token_hash

    async def find_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._lock:
            return self._by_hash.get(token_hash)

    async def delete_by_hash(self, token_hash: str) -> bool:
        with self._lock:
            record = self._by_hash.pop(token_hash, None)
            if record is None:
                return False
            if self._hash_by_principal.get(record.principal_id) == token_hash:
                del self._hash_by_principal[record.principal_id]
            return True

    async def count_for_principal(self, principal_id: str) -> int:
        with self._lock:
            return sum(1 for record in self._by_hash.values() if record.principal_id == principal_id)

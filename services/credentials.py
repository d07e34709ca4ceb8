"""Credential validation with failed attempt bookkeeping for audit."""

import threading

import logfire

from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import datetime
from logging import getLogger
from typing import Callable, Optional, Union

from starlette.concurrency import run_in_threadpool

from models.helpers import FailureReason
from schema.users import Principal
from security.helpers import dummy_verify, mask_email, mask_identifier, mask_tax_id, verify_password
from security.refresh_token import utc_now
from services.storage import PrincipalDirectory, call_with_timeout

logger = getLogger(__name__)


@dataclass(frozen=True)
class FailedAttemptRecord:
    """Consecutive failures for one identifier. In memory only."""

    count: int
    last_attempt_at: datetime
    last_reason: FailureReason
    last_origin: Optional[str] = None


@dataclass(frozen=True)
class Valid:
    principal: Principal


@dataclass(frozen=True)
class Invalid:
    """Generic failure. `reason` is for logs and tests, never for clients."""

    reason: FailureReason


CredentialCheck = Union[Valid, Invalid]


class CredentialValidator:
    """Checks an identifier and secret against the principal directory.

    Unknown identifiers and wrong secrets produce the same `Invalid` result and
    take the same time, so callers cannot tell them apart.
    """

    def __init__(
        self,
        directory: PrincipalDirectory,
        timeout_seconds: float = 5.0,
        max_tracked: int = 10_000,
        now: Callable[[], datetime] = utc_now,
        password_verifier: Callable[[str, str], bool] = verify_password,
        dummy_verifier: Callable[[], None] = dummy_verify,
    ):
        self.directory = directory
        self.timeout_seconds = timeout_seconds
        self.max_tracked = max_tracked
        self._now = now
        self._verify = password_verifier
        self._dummy_verify = dummy_verifier
        self._failed_attempts: "OrderedDict[str, FailedAttemptRecord]" = OrderedDict()
        self._lock = threading.Lock()

    async def validate(self, identifier: str, secret: str, origin: Optional[str] = None) -> CredentialCheck:
        """Validate `identifier` and `secret`.

        Args:
            identifier (str): Email or tax id.
            secret (str): The plain text password.
            origin (Optional[str], optional): Client address, kept for audit. Defaults to None.

        Raises:
            PersistenceUnavailable: Raised when the principal lookup times out or fails.

        Returns:
            CredentialCheck: `Valid(principal)` or `Invalid(reason)`.
        """
        identifier = (identifier or "").strip()
        self._audit_attempt(identifier, origin)

        if not identifier:
            await run_in_threadpool(self._dummy_verify)
            return self._fail(identifier, FailureReason.MISSING_IDENTIFIER, origin)

        principal = await call_with_timeout(
            self.directory.find_by_identifier(identifier),
            self.timeout_seconds,
            "principal.find_by_identifier",
        )

        if principal is None:
            await run_in_threadpool(self._dummy_verify)
            return self._fail(identifier, FailureReason.NOT_FOUND, origin)

        matches = await run_in_threadpool(self._verify, secret, principal.password_hash)
        if not matches:
            return self._fail(identifier, FailureReason.MISMATCH, origin)

        if not principal.is_active:
            return self._fail(identifier, FailureReason.INACTIVE, origin)

        self._clear_failures(identifier)
        self._audit_success(principal, origin)
        return Valid(principal=principal)

    def failed_attempt_count(self, identifier: str) -> int:
        record = self.failed_attempts(identifier)
        return record.count if record else 0

    def failed_attempts(self, identifier: str) -> Optional[FailedAttemptRecord]:
        with self._lock:
            return self._failed_attempts.get(identifier)

    def _fail(self, identifier: str, reason: FailureReason, origin: Optional[str]) -> Invalid:
        # Bookkeeping must never change the outcome of the check
        try:
            count = self._record_failure(identifier, reason, origin)
            self._audit_failure(identifier, reason, origin, count)
        except Exception:
            logger.exception("Failed attempt bookkeeping error")
        return Invalid(reason=reason)

    def _record_failure(self, identifier: str, reason: FailureReason, origin: Optional[str]) -> int:
        now = self._now()
        with self._lock:
            previous = self._failed_attempts.pop(identifier, None)
            if previous is None:
                record = FailedAttemptRecord(count=1, last_attempt_at=now, last_reason=reason, last_origin=origin)
            else:
                record = replace(
                    previous,
                    count=previous.count + 1,
                    last_attempt_at=now,
                    last_reason=reason,
                    last_origin=origin,
                )
            self._failed_attempts[identifier] = record

            while len(self._failed_attempts) > self.max_tracked:
                self._failed_attempts.popitem(last=False)

            return record.count

    def _clear_failures(self, identifier: str) -> None:
        try:
            with self._lock:
                removed = self._failed_attempts.pop(identifier, None)
            if removed:
                logfire.debug(
                    f"Cleared {removed.count} failed attempts for {mask_identifier(identifier)}"
                )
        except Exception:
            logger.exception("Failed attempt bookkeeping error")

    def _audit_attempt(self, identifier: str, origin: Optional[str]) -> None:
        try:
            logfire.info(f"[AUDIT] Login attempt started - identifier: {mask_identifier(identifier)}, origin: {origin}")
        except Exception:
            logger.exception("Audit logging error")

    def _audit_failure(self, identifier: str, reason: FailureReason, origin: Optional[str], count: int) -> None:
        logfire.warning(
            f"[AUDIT] Login attempt failed - identifier: {mask_identifier(identifier)}, "
            f"reason: {reason.value}, origin: {origin}, consecutive failures: {count}"
        )

    def _audit_success(self, principal: Principal, origin: Optional[str]) -> None:
        try:
            logfire.info(
                f"[AUDIT] Login succeeded - principal: {principal.id}, email: {mask_email(principal.email)}, "
                f"tax id: {mask_tax_id(principal.tax_id)}, origin: {origin}"
            )
        except Exception:
            logger.exception("Audit logging error")

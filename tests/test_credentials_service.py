from __future__ import annotations

import os
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from attendtrack.db import Base
from attendtrack.errors import ApiError
from attendtrack.models import Account, as_utc
from attendtrack.security import verify_password
from attendtrack.services.credentials import (
    consume_reset_token,
    create_account,
    create_reset_token,
    hash_reset_token,
    is_locked,
    record_failed_login,
    record_successful_login,
    register_device,
    verify_credentials,
)
from attendtrack.settings import get_settings


def _make_session_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class CredentialStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self._env = patch.dict(os.environ, {"BCRYPT_ROUNDS": "4"}, clear=False)
        self._env.start()
        get_settings.cache_clear()
        self.session_factory = _make_session_factory()
        self.db = self.session_factory()
        self.now = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        self.account = create_account(
            self.db,
            name="Ayse Demir",
            email="  Ayse.Demir@Example.com ",
            password="secret1",
            employee_id="EMP-001",
            now=self.now,
        )

    def tearDown(self) -> None:
        self.db.close()
        self._env.stop()
        get_settings.cache_clear()

    def test_create_stores_only_a_hash_and_normalized_email(self) -> None:
        self.assertEqual(self.account.email, "ayse.demir@example.com")
        self.assertNotEqual(self.account.password_hash, "secret1")
        self.assertNotIn("secret1", self.account.password_hash)
        self.assertTrue(verify_password("secret1", self.account.password_hash))
        self.assertEqual(as_utc(self.account.password_changed_at), self.now)

    def test_create_rejects_short_password(self) -> None:
        with self.assertRaises(ApiError) as ctx:
            create_account(self.db, name="Short", email="short@example.com", password="12345")
        self.assertEqual(ctx.exception.code, "WEAK_PASSWORD")

    def test_create_rejects_duplicate_email_case_insensitively(self) -> None:
        with self.assertRaises(ApiError) as ctx:
            create_account(self.db, name="Dup", email="AYSE.DEMIR@example.com", password="secret1")
        self.assertEqual(ctx.exception.code, "EMAIL_EXISTS")

    def test_create_rejects_duplicate_employee_id(self) -> None:
        with self.assertRaises(ApiError) as ctx:
            create_account(
                self.db,
                name="Other",
                email="other@example.com",
                password="secret1",
                employee_id="EMP-001",
            )
        self.assertEqual(ctx.exception.code, "EMPLOYEE_ID_EXISTS")

    def test_five_failures_lock_account_for_thirty_minutes(self) -> None:
        result = None
        for attempt in range(5):
            result = verify_credentials(
                self.db,
                self.account,
                "wrong-password",
                now=self.now + timedelta(seconds=attempt),
            )
        assert result is not None
        self.assertTrue(result.locked)
        self.assertEqual(result.failed_attempts, 5)
        self.assertEqual(result.lock_until, self.now + timedelta(seconds=4, minutes=30))
        self.assertTrue(is_locked(self.account, now=self.now + timedelta(minutes=29)))

        # Correct password during the lock window is still rejected and leaves the counter alone.
        sixth = verify_credentials(self.db, self.account, "secret1", now=self.now + timedelta(minutes=10))
        self.assertFalse(sixth.matched)
        self.assertTrue(sixth.locked)
        self.db.refresh(self.account)
        self.assertEqual(self.account.failed_login_attempts, 5)

        after_lock = self.now + timedelta(minutes=31)
        self.assertFalse(is_locked(self.account, now=after_lock))
        result = verify_credentials(self.db, self.account, "secret1", now=after_lock)
        self.assertTrue(result.matched)
        self.assertEqual(self.account.failed_login_attempts, 0)
        self.assertIsNone(self.account.lock_until)

    def test_failure_after_expired_lock_restarts_counter(self) -> None:
        for attempt in range(5):
            verify_credentials(self.db, self.account, "nope", now=self.now + timedelta(seconds=attempt))

        result = verify_credentials(self.db, self.account, "nope", now=self.now + timedelta(hours=1))
        self.assertFalse(result.locked)
        self.assertEqual(result.failed_attempts, 1)
        self.assertIsNone(self.account.lock_until)

    def test_success_after_failures_resets_counter(self) -> None:
        for attempt in range(3):
            verify_credentials(self.db, self.account, "nope", now=self.now + timedelta(seconds=attempt))
        self.assertEqual(self.account.failed_login_attempts, 3)

        login_at = self.now + timedelta(minutes=1)
        result = verify_credentials(self.db, self.account, "secret1", now=login_at)
        self.assertTrue(result.matched)
        self.assertEqual(self.account.failed_login_attempts, 0)
        self.assertIsNone(self.account.lock_until)
        self.assertEqual(as_utc(self.account.last_login_at), login_at)

    def test_deferred_success_waits_for_record_successful_login(self) -> None:
        for attempt in range(2):
            verify_credentials(self.db, self.account, "nope", now=self.now + timedelta(seconds=attempt))

        login_at = self.now + timedelta(minutes=1)
        result = verify_credentials(self.db, self.account, "secret1", now=login_at, record_success=False)
        self.assertTrue(result.matched)
        self.assertEqual(self.account.failed_login_attempts, 2)
        self.assertIsNone(self.account.last_login_at)

        self.assertTrue(record_successful_login(self.db, self.account, now=login_at))
        self.assertEqual(self.account.failed_login_attempts, 0)
        self.assertEqual(as_utc(self.account.last_login_at), login_at)

    def test_record_successful_login_refuses_a_locked_account(self) -> None:
        for attempt in range(5):
            record_failed_login(self.db, self.account, now=self.now + timedelta(seconds=attempt))
        self.assertFalse(record_successful_login(self.db, self.account, now=self.now + timedelta(minutes=1)))
        self.assertEqual(self.account.failed_login_attempts, 5)
        self.assertIsNone(self.account.last_login_at)

    def test_failed_logins_from_stale_copies_are_all_counted(self) -> None:
        for attempt in range(3):
            verify_credentials(self.db, self.account, "nope", now=self.now + timedelta(seconds=attempt))

        session_a = self.session_factory()
        session_b = self.session_factory()
        self.addCleanup(session_a.close)
        self.addCleanup(session_b.close)
        account_a = session_a.get(Account, self.account.id)
        account_b = session_b.get(Account, self.account.id)
        self.assertEqual(account_a.failed_login_attempts, 3)
        self.assertEqual(account_b.failed_login_attempts, 3)

        failed_at = self.now + timedelta(minutes=1)
        first = verify_credentials(session_a, account_a, "nope", now=failed_at)
        self.assertEqual(first.failed_attempts, 4)
        self.assertFalse(first.locked)

        # account_b still holds the count read before the first failure landed.
        self.assertEqual(account_b.failed_login_attempts, 3)
        second = verify_credentials(session_b, account_b, "nope", now=failed_at)
        self.assertEqual(second.failed_attempts, 5)
        self.assertTrue(second.locked)

        self.db.expire_all()
        stored = self.db.get(Account, self.account.id)
        self.assertEqual(stored.failed_login_attempts, 5)
        self.assertIsNotNone(stored.lock_until)

    def test_fourth_distinct_device_is_refused(self) -> None:
        for index in range(3):
            registration = register_device(
                self.db,
                self.account,
                device_id=f"device-{index}",
                device_name=f"Phone {index}",
                platform="android",
                now=self.now,
            )
            self.assertTrue(registration.is_new)
            self.assertFalse(registration.limit_reached)

        fourth = register_device(self.db, self.account, device_id="device-3", now=self.now)
        self.assertTrue(fourth.is_new)
        self.assertTrue(fourth.limit_reached)
        self.assertIsNone(fourth.device)
        self.db.refresh(self.account)
        self.assertEqual(len(self.account.devices), 3)
        self.assertEqual([item.device_id for item in self.account.devices], ["device-0", "device-1", "device-2"])

    def test_known_device_only_refreshes_last_used(self) -> None:
        register_device(self.db, self.account, device_id="laptop", platform="macos", now=self.now)
        later = self.now + timedelta(hours=2)
        again = register_device(self.db, self.account, device_id="laptop", platform="macos", now=later)

        self.assertFalse(again.is_new)
        self.assertFalse(again.limit_reached)
        self.db.refresh(self.account)
        self.assertEqual(len(self.account.devices), 1)
        self.assertEqual(as_utc(self.account.devices[0].last_used_at), later)
        self.assertEqual(as_utc(self.account.devices[0].added_at), self.now)

    def test_device_without_identifier_is_a_no_op(self) -> None:
        registration = register_device(self.db, self.account, device_id="  ", now=self.now)
        self.assertFalse(registration.is_new)
        self.assertFalse(registration.limit_reached)
        self.assertEqual(len(self.account.devices), 0)

    def test_reset_token_is_single_use(self) -> None:
        raw_token = create_reset_token(self.db, self.account, now=self.now)
        self.assertEqual(len(raw_token), 64)
        self.assertEqual(self.account.reset_token_hash, hash_reset_token(raw_token))
        self.assertNotEqual(self.account.reset_token_hash, raw_token)

        reset_at = self.now + timedelta(minutes=5)
        account = consume_reset_token(self.db, raw_token, "brand-new", now=reset_at)
        self.assertIsNotNone(account)
        assert account is not None
        self.assertTrue(verify_password("brand-new", account.password_hash))
        self.assertIsNone(account.reset_token_hash)
        self.assertIsNone(account.reset_token_expires_at)
        self.assertEqual(as_utc(account.password_changed_at), reset_at)

        self.assertIsNone(consume_reset_token(self.db, raw_token, "another1", now=reset_at))

    def test_reset_token_expires_after_fifteen_minutes(self) -> None:
        raw_token = create_reset_token(self.db, self.account, now=self.now)
        self.assertIsNone(
            consume_reset_token(self.db, raw_token, "brand-new", now=self.now + timedelta(minutes=16))
        )

    def test_successful_reset_clears_lockout(self) -> None:
        for attempt in range(5):
            verify_credentials(self.db, self.account, "nope", now=self.now + timedelta(seconds=attempt))
        raw_token = create_reset_token(self.db, self.account, now=self.now + timedelta(minutes=1))

        account = consume_reset_token(self.db, raw_token, "brand-new", now=self.now + timedelta(minutes=2))
        assert account is not None
        self.assertEqual(account.failed_login_attempts, 0)
        self.assertIsNone(account.lock_until)
        self.assertEqual(self.db.get(Account, account.id).failed_login_attempts, 0)


if __name__ == "__main__":
    unittest.main()

"""SQLite-backed OTP record store with single-statement conditional updates."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from threading import Lock

from marketauth.core.state_db import connect_state_db, store_errors
from marketauth.core.targets import VerificationTarget
from marketauth.otp.models import OTPRecord, OTPStatistics, OTPStatus

_RECORD_COLUMNS = (
    "target, channel, code_hash, instance_id, created_at, expires_at, last_sent_at, "
    "attempts_remaining, status, version, send_count, verified_at"
)


class SQLiteOTPStore:
    """OTP records keyed by canonical target.

    Every state transition is one conditional ``UPDATE``/upsert guarded by the
    record's ``instance_id`` and current status, so concurrent callers for the
    same target are linearized by the database rather than by this process.
    """

    def __init__(self, *, database_path: Path, timeout_seconds: float = 5.0) -> None:
        """Open the state database and make sure the schema is migrated."""
        self._connection = connect_state_db(database_path, timeout_seconds=timeout_seconds)
        self._lock = Lock()

    def issue(
        self,
        target: VerificationTarget,
        *,
        code_hash: str,
        instance_id: str,
        now: int,
        ttl_seconds: int,
        max_attempts: int,
        cooldown_seconds: int,
    ) -> OTPRecord | None:
        """Create or supersede the record for ``target``.

        Returns ``None`` without writing when the previous send is still inside
        the cooldown window.
        """
        with self._lock, store_errors():
            row = self._connection.execute(
                f"""
                INSERT INTO otp_records(
                  target, channel, code_hash, instance_id, created_at, expires_at,
                  last_sent_at, attempts_remaining, status, version, send_count, verified_at
                ) VALUES (
                  :target, :channel, :code_hash, :instance_id, :now, :expires_at,
                  :now, :max_attempts, :status, 1, 1, NULL
                )
                ON CONFLICT(target) DO UPDATE SET
                  code_hash = excluded.code_hash,
                  instance_id = excluded.instance_id,
                  created_at = excluded.created_at,
                  expires_at = excluded.expires_at,
                  last_sent_at = excluded.last_sent_at,
                  attempts_remaining = excluded.attempts_remaining,
                  status = excluded.status,
                  version = otp_records.version + 1,
                  send_count = otp_records.send_count + 1,
                  verified_at = NULL
                WHERE otp_records.last_sent_at <= :now - :cooldown
                RETURNING {_RECORD_COLUMNS}
                """,
                {
                    "target": target.key,
                    "channel": str(target.channel),
                    "code_hash": code_hash,
                    "instance_id": instance_id,
                    "now": now,
                    "expires_at": now + ttl_seconds,
                    "max_attempts": max_attempts,
                    "status": str(OTPStatus.PENDING),
                    "cooldown": cooldown_seconds,
                },
            ).fetchone()
            self._connection.commit()
        return self._to_record(row)

    def get(self, target_key: str) -> OTPRecord | None:
        """Return current record for target key when present."""
        with self._lock, store_errors():
            row = self._connection.execute(
                f"SELECT {_RECORD_COLUMNS} FROM otp_records WHERE target = ?",
                (target_key,),
            ).fetchone()
        return self._to_record(row)

    def consume_attempt(self, target_key: str, *, instance_id: str, now: int) -> OTPRecord | None:
        """Decrement attempts for a wrong guess, locking the record at zero.

        Returns ``None`` when the record is no longer a live pending instance.
        """
        with self._lock, store_errors():
            row = self._connection.execute(
                f"""
                UPDATE otp_records
                SET attempts_remaining = attempts_remaining - 1,
                    status = CASE WHEN attempts_remaining - 1 <= 0 THEN :locked ELSE status END,
                    version = version + 1
                WHERE target = :target
                  AND instance_id = :instance_id
                  AND status = :pending
                  AND attempts_remaining > 0
                  AND expires_at >= :now
                RETURNING {_RECORD_COLUMNS}
                """,
                {
                    "target": target_key,
                    "instance_id": instance_id,
                    "locked": str(OTPStatus.LOCKED),
                    "pending": str(OTPStatus.PENDING),
                    "now": now,
                },
            ).fetchone()
            self._connection.commit()
        return self._to_record(row)

    def mark_verified(self, target_key: str, *, instance_id: str, now: int) -> bool:
        """Transition a live pending record to verified."""
        return self._transition(
            """
            UPDATE otp_records
            SET status = :new_status, verified_at = :now, version = version + 1
            WHERE target = :target
              AND instance_id = :instance_id
              AND status = :pending
              AND attempts_remaining > 0
              AND expires_at >= :now
            """,
            target_key=target_key,
            instance_id=instance_id,
            new_status=OTPStatus.VERIFIED,
            now=now,
        )

    def mark_expired(self, target_key: str, *, instance_id: str, now: int) -> bool:
        """Transition a pending record past its expiry to expired."""
        return self._transition(
            """
            UPDATE otp_records
            SET status = :new_status, version = version + 1
            WHERE target = :target
              AND instance_id = :instance_id
              AND status = :pending
              AND expires_at < :now
            """,
            target_key=target_key,
            instance_id=instance_id,
            new_status=OTPStatus.EXPIRED,
            now=now,
        )

    def mark_locked(self, target_key: str, *, instance_id: str) -> bool:
        """Transition a pending record with no attempts left to locked."""
        return self._transition(
            """
            UPDATE otp_records
            SET status = :new_status, version = version + 1
            WHERE target = :target
              AND instance_id = :instance_id
              AND status = :pending
              AND attempts_remaining <= 0
            """,
            target_key=target_key,
            instance_id=instance_id,
            new_status=OTPStatus.LOCKED,
            now=0,
        )

    def purge(self, *, now: int, grace_seconds: int) -> int:
        """Delete records whose expiry plus grace window has passed."""
        with self._lock, store_errors():
            cursor = self._connection.execute(
                "DELETE FROM otp_records WHERE expires_at + ? < ?",
                (grace_seconds, now),
            )
            self._connection.commit()
            return int(cursor.rowcount or 0)

    def statistics(self, *, now: int) -> OTPStatistics:
        """Count records per effective status."""
        with self._lock, store_errors():
            row = self._connection.execute(
                """
                SELECT
                  SUM(CASE WHEN status = :pending AND expires_at >= :now THEN 1 ELSE 0 END) AS pending,
                  SUM(CASE WHEN status = :verified THEN 1 ELSE 0 END) AS verified,
                  SUM(CASE WHEN status = :expired OR (status = :pending AND expires_at < :now)
                      THEN 1 ELSE 0 END) AS expired,
                  SUM(CASE WHEN status = :locked THEN 1 ELSE 0 END) AS locked,
                  SUM(CASE WHEN last_sent_at >= :day_ago THEN 1 ELSE 0 END) AS sent_last_24h
                FROM otp_records
                """,
                {
                    "now": now,
                    "day_ago": now - 24 * 60 * 60,
                    "pending": str(OTPStatus.PENDING),
                    "verified": str(OTPStatus.VERIFIED),
                    "expired": str(OTPStatus.EXPIRED),
                    "locked": str(OTPStatus.LOCKED),
                },
            ).fetchone()
        return OTPStatistics(
            pending=int(row["pending"] or 0),
            verified=int(row["verified"] or 0),
            expired=int(row["expired"] or 0),
            locked=int(row["locked"] or 0),
            sent_last_24h=int(row["sent_last_24h"] or 0),
        )

    def close(self) -> None:
        """Close SQLite resources."""
        with self._lock:
            self._connection.close()

    def _transition(
        self,
        sql: str,
        *,
        target_key: str,
        instance_id: str,
        new_status: OTPStatus,
        now: int,
    ) -> bool:
        with self._lock, store_errors():
            cursor = self._connection.execute(
                sql,
                {
                    "target": target_key,
                    "instance_id": instance_id,
                    "new_status": str(new_status),
                    "pending": str(OTPStatus.PENDING),
                    "now": now,
                },
            )
            self._connection.commit()
            return cursor.rowcount == 1

    @staticmethod
    def _to_record(row: sqlite3.Row | None) -> OTPRecord | None:
        if row is None:
            return None
        return OTPRecord.model_validate(dict(row))

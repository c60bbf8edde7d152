from __future__ import annotations

import threading
from pathlib import Path

from marketauth.core.clock import FrozenClock
from marketauth.core.config import OTPConfig
from marketauth.core.state_db import StoreTimeoutError
from marketauth.core.targets import normalize_target
from marketauth.notifications.gateway import NotificationTimeoutError, NotificationUnavailableError
from marketauth.otp.manager import OTPManager
from marketauth.otp.models import GenerateOutcome, OTPStatus, ValidationOutcome
from marketauth.otp.store import SQLiteOTPStore
from tests.mock_app import PHONE, RecordingGateway


def _manager(
    tmp_path: Path,
    *,
    clock: FrozenClock | None = None,
    gateway: RecordingGateway | None = None,
    **overrides,
) -> tuple[OTPManager, FrozenClock, RecordingGateway]:
    clock = clock or FrozenClock()
    gateway = gateway or RecordingGateway()
    config = OTPConfig(hash_secret="test-pepper", expose_code=True, **overrides)
    manager = OTPManager(
        store=SQLiteOTPStore(database_path=tmp_path / "state.db"),
        gateway=gateway,
        config=config,
        clock=clock,
        retry_backoff_seconds=0.0,
        sleep=lambda _: None,
    )
    return manager, clock, gateway


def _wrong(code: str) -> str:
    return "111111" if code == "000000" else "000000"


def test_generate_persists_hashed_record_and_delivers_code(tmp_path: Path) -> None:
    manager, _, gateway = _manager(tmp_path)
    target = normalize_target(phone=PHONE)

    result = manager.generate(target)

    assert result.outcome == GenerateOutcome.ISSUED
    assert result.delivered is True
    assert result.record is not None
    assert result.record.status == OTPStatus.PENDING
    assert result.record.attempts_remaining == 5
    assert result.code == gateway.last_code()
    assert result.code not in result.record.code_hash
    assert gateway.sent == [(PHONE, result.code)]


def test_generate_within_cooldown_sends_nothing(tmp_path: Path) -> None:
    manager, clock, gateway = _manager(tmp_path)
    target = normalize_target(phone=PHONE)
    manager.generate(target)
    clock.advance(20)

    result = manager.generate(target)

    assert result.outcome == GenerateOutcome.COOLDOWN
    assert result.retry_after_seconds == 40
    assert len(gateway.sent) == 1


def test_generate_after_cooldown_supersedes_previous_code(tmp_path: Path) -> None:
    manager, clock, gateway = _manager(tmp_path)
    target = normalize_target(phone=PHONE)
    first = manager.generate(target)
    manager.validate(target, _wrong(first.code))
    clock.advance(60)

    second = manager.generate(target)

    assert second.outcome == GenerateOutcome.ISSUED
    assert second.record.attempts_remaining == 5
    assert second.record.send_count == 2
    assert second.record.instance_id != first.record.instance_id
    if first.code != second.code:
        assert manager.validate(target, first.code).outcome == ValidationOutcome.MISMATCH
    assert manager.validate(target, second.code).outcome == ValidationOutcome.VERIFIED
    assert len(gateway.sent) == 2


def test_validate_succeeds_once_then_reports_already_verified(tmp_path: Path) -> None:
    manager, _, _ = _manager(tmp_path)
    target = normalize_target(phone=PHONE)
    code = manager.generate(target).code

    first = manager.validate(target, code)
    second = manager.validate(target, code)
    wrong = manager.validate(target, _wrong(code))

    assert first.outcome == ValidationOutcome.VERIFIED
    assert second.outcome == ValidationOutcome.ALREADY_VERIFIED
    assert second.succeeded is True
    assert wrong.outcome == ValidationOutcome.MISMATCH
    assert wrong.attempts_remaining == 5


def test_validate_locks_on_last_wrong_attempt(tmp_path: Path) -> None:
    manager, _, _ = _manager(tmp_path, max_attempts=3)
    target = normalize_target(phone=PHONE)
    code = manager.generate(target).code
    wrong = _wrong(code)

    remaining = [manager.validate(target, wrong).attempts_remaining for _ in range(3)]
    after_lock = manager.validate(target, code)

    assert remaining == [2, 1, 0]
    assert after_lock.outcome == ValidationOutcome.LOCKED
    assert after_lock.attempts_remaining == 0
    assert manager.status(target).status == OTPStatus.LOCKED


def test_validate_after_expiry_reports_expired_without_consuming_attempts(tmp_path: Path) -> None:
    manager, clock, _ = _manager(tmp_path, ttl_seconds=300)
    target = normalize_target(phone=PHONE)
    code = manager.generate(target).code
    clock.advance(301)

    result = manager.validate(target, code)
    again = manager.validate(target, _wrong(code))

    assert result.outcome == ValidationOutcome.EXPIRED
    assert again.outcome == ValidationOutcome.EXPIRED
    assert manager.status(target).attempts_remaining == 5


def test_validate_at_exact_expiry_still_accepts_code(tmp_path: Path) -> None:
    manager, clock, _ = _manager(tmp_path, ttl_seconds=300)
    target = normalize_target(phone=PHONE)
    code = manager.generate(target).code
    clock.advance(300)

    assert manager.validate(target, code).outcome == ValidationOutcome.VERIFIED


def test_verified_record_past_expiry_reports_expired_for_any_code(tmp_path: Path) -> None:
    manager, clock, _ = _manager(tmp_path, ttl_seconds=600)
    target = normalize_target(phone=PHONE)
    code = manager.generate(target).code
    assert manager.validate(target, code).outcome == ValidationOutcome.VERIFIED
    clock.advance(20 * 3600)

    correct = manager.validate(target, code)
    wrong = manager.validate(target, _wrong(code))

    assert correct.outcome == ValidationOutcome.EXPIRED
    assert correct.succeeded is False
    assert wrong.outcome == ValidationOutcome.EXPIRED
    assert wrong.attempts_remaining is None


def test_locked_record_past_expiry_reports_expired(tmp_path: Path) -> None:
    manager, clock, _ = _manager(tmp_path, ttl_seconds=300, max_attempts=1)
    target = normalize_target(phone=PHONE)
    code = manager.generate(target).code
    manager.validate(target, _wrong(code))
    clock.advance(301)

    result = manager.validate(target, code)

    assert result.outcome == ValidationOutcome.EXPIRED
    assert result.attempts_remaining is None


class _FlakyStore:
    """Delegates to a real store but fails the first call of each named method."""

    def __init__(self, store: SQLiteOTPStore, failing: set[str]) -> None:
        self._store = store
        self._failing = set(failing)
        self.failures: list[str] = []

    def __getattr__(self, name: str):
        attribute = getattr(self._store, name)
        if name not in self._failing:
            return attribute

        def call(*args, **kwargs):
            if name in self._failing:
                self._failing.discard(name)
                self.failures.append(name)
                raise StoreTimeoutError("database is locked")
            return attribute(*args, **kwargs)

        return call


def test_store_transitions_are_retried_once(tmp_path: Path) -> None:
    store = _FlakyStore(
        SQLiteOTPStore(database_path=tmp_path / "state.db"),
        {"consume_attempt", "mark_verified"},
    )
    gateway = RecordingGateway()
    manager = OTPManager(
        store=store,
        gateway=gateway,
        config=OTPConfig(hash_secret="test-pepper", expose_code=True),
        clock=FrozenClock(),
        retry_backoff_seconds=0.0,
        sleep=lambda _: None,
    )
    target = normalize_target(phone=PHONE)
    code = manager.generate(target).code

    wrong = manager.validate(target, _wrong(code))
    right = manager.validate(target, code)

    assert wrong.outcome == ValidationOutcome.MISMATCH
    assert wrong.attempts_remaining == 4
    assert right.outcome == ValidationOutcome.VERIFIED
    assert store.failures == ["consume_attempt", "mark_verified"]


def test_validate_without_record_reports_not_found(tmp_path: Path) -> None:
    manager, _, _ = _manager(tmp_path)

    result = manager.validate(normalize_target(email="nobody@example.com"), "123456")

    assert result.outcome == ValidationOutcome.NOT_FOUND


def test_concurrent_wrong_guesses_never_overspend_attempts(tmp_path: Path) -> None:
    manager, _, _ = _manager(tmp_path, max_attempts=2)
    target = normalize_target(phone=PHONE)
    code = manager.generate(target).code
    wrong = _wrong(code)
    outcomes: list[ValidationOutcome] = []
    barrier = threading.Barrier(6)

    def guess() -> None:
        barrier.wait()
        outcomes.append(manager.validate(target, wrong).outcome)

    threads = [threading.Thread(target=guess) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    view = manager.status(target)
    assert outcomes.count(ValidationOutcome.MISMATCH) == 2
    assert outcomes.count(ValidationOutcome.LOCKED) == 4
    assert view.status == OTPStatus.LOCKED
    assert view.attempts_remaining == 0


def test_concurrent_correct_guesses_verify_exactly_once(tmp_path: Path) -> None:
    manager, _, _ = _manager(tmp_path)
    target = normalize_target(phone=PHONE)
    code = manager.generate(target).code
    outcomes: list[ValidationOutcome] = []
    barrier = threading.Barrier(4)

    def guess() -> None:
        barrier.wait()
        outcomes.append(manager.validate(target, code).outcome)

    threads = [threading.Thread(target=guess) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count(ValidationOutcome.VERIFIED) == 1
    assert outcomes.count(ValidationOutcome.ALREADY_VERIFIED) == 3


def test_unavailable_gateway_is_retried_once(tmp_path: Path) -> None:
    gateway = RecordingGateway(errors=[NotificationUnavailableError("down")])
    manager, _, _ = _manager(tmp_path, gateway=gateway)

    result = manager.generate(normalize_target(phone=PHONE))

    assert result.delivered is True
    assert len(gateway.sent) == 2


def test_gateway_timeout_is_not_retried_and_keeps_cooldown(tmp_path: Path) -> None:
    gateway = RecordingGateway(errors=[NotificationTimeoutError("slow")])
    manager, _, _ = _manager(tmp_path, gateway=gateway)
    target = normalize_target(phone=PHONE)

    result = manager.generate(target)
    retry = manager.generate(target)

    assert result.outcome == GenerateOutcome.ISSUED
    assert result.delivered is False
    assert result.delivery_error == "timeout"
    assert len(gateway.sent) == 1
    assert retry.outcome == GenerateOutcome.COOLDOWN


def test_rejected_delivery_is_reported(tmp_path: Path) -> None:
    manager, _, _ = _manager(tmp_path, gateway=RecordingGateway(accept=False))

    result = manager.generate(normalize_target(phone=PHONE))

    assert result.delivered is False
    assert result.delivery_error == "rejected"


def test_status_is_read_only(tmp_path: Path) -> None:
    manager, clock, _ = _manager(tmp_path, ttl_seconds=300)
    target = normalize_target(phone=PHONE)
    manager.generate(target)
    clock.advance(30)

    view = manager.status(target)
    clock.advance(400)
    expired_view = manager.status(target)
    expired_again = manager.status(target)

    assert view.status == OTPStatus.PENDING
    assert view.cooldown_remaining == 30
    assert view.can_resend is False
    assert view.expires_in_seconds == 270
    assert expired_view.status == OTPStatus.EXPIRED
    assert expired_view.expires_in_seconds == 0
    assert expired_again == expired_view
    assert manager.statistics().expired == 1
    assert manager.status(normalize_target(email="none@example.com")) is None


def test_cleanup_removes_only_records_past_grace(tmp_path: Path) -> None:
    manager, clock, _ = _manager(tmp_path, ttl_seconds=300, gc_grace_seconds=600)
    old = normalize_target(phone=PHONE)
    fresh = normalize_target(email="fresh@example.com")
    manager.generate(old)
    clock.advance(901)
    manager.generate(fresh)

    removed = manager.cleanup()

    assert removed == 1
    assert manager.status(old) is None
    assert manager.status(fresh) is not None


def test_statistics_counts_records_by_status(tmp_path: Path) -> None:
    manager, _, _ = _manager(tmp_path)
    verified = normalize_target(phone=PHONE)
    pending = normalize_target(email="pending@example.com")
    manager.validate(verified, manager.generate(verified).code)
    manager.generate(pending)

    stats = manager.statistics()

    assert stats.verified == 1
    assert stats.pending == 1
    assert stats.locked == 0
    assert stats.sent_last_24h == 2

from pustakabot import abuse_guard
from pustakabot.abuse_guard import AbuseGuard, GuardLimits


def test_first_message_is_allowed():
    guard = AbuseGuard()

    decision = guard.check_and_record("628111", "halo", now=100.0)

    assert decision.allow is True
    assert decision.reason == abuse_guard.ALLOWED


def test_cooldown_drops_fast_second_message_silently():
    guard = AbuseGuard()
    guard.check_and_record("628111", "halo", now=100.0)

    decision = guard.check_and_record("628111", "halo lagi", now=100.5)

    assert decision.allow is False
    assert decision.reason == abuse_guard.COOLDOWN
    assert decision.silent is True


def test_cooldown_stamps_dropped_messages():
    guard = AbuseGuard()
    guard.check_and_record("628111", "a", now=100.0)
    guard.check_and_record("628111", "b", now=100.9)

    # 1.5 s after the first but only 0.6 s after the dropped one.
    decision = guard.check_and_record("628111", "c", now=101.5)

    assert decision.reason == abuse_guard.COOLDOWN
    assert guard.record_for("628111").last_message_at == 101.5


def test_cooldown_is_per_sender():
    guard = AbuseGuard()
    guard.check_and_record("628111", "a", now=100.0)

    assert guard.check_and_record("628222", "b", now=100.1).allow is True


def test_rate_window_starts_ban_once_then_drops():
    guard = AbuseGuard()
    decisions = [guard.check_and_record("628111", "x", now=1000.0 + i * 2) for i in range(23)]

    assert all(decision.allow for decision in decisions[:22])
    assert decisions[22].reason == abuse_guard.BAN_STARTED
    assert decisions[22].silent is False

    later = guard.check_and_record("628111", "x", now=1000.0 + 23 * 2)
    assert later.reason == abuse_guard.BANNED
    assert later.silent is True


def test_ban_expires_after_duration():
    limits = GuardLimits(max_messages=2, ban_duration_sec=600)
    guard = AbuseGuard(limits)
    for i in range(3):
        guard.check_and_record("628111", "x", now=10.0 + i * 2)
    record = guard.record_for("628111")
    assert record.banned_until == 14.0 + 600

    assert guard.check_and_record("628111", "x", now=500.0).reason == abuse_guard.BANNED
    assert guard.check_and_record("628111", "x", now=700.0).allow is True


def test_window_resets_after_sixty_seconds():
    guard = AbuseGuard(GuardLimits(max_messages=3))
    for i in range(3):
        assert guard.check_and_record("628111", "x", now=10.0 + i * 2).allow

    decision = guard.check_and_record("628111", "x", now=80.0)

    assert decision.allow is True
    assert guard.record_for("628111").message_count == 1


def test_too_long_message_reports_length():
    guard = AbuseGuard()

    decision = guard.check_and_record("628111", "a" * 301, now=100.0)

    assert decision.allow is False
    assert decision.reason == abuse_guard.TOO_LONG
    assert decision.length == 301
    assert decision.silent is False


def test_message_at_limit_is_allowed():
    guard = AbuseGuard()

    assert guard.check_and_record("628111", "a" * 300, now=100.0).allow is True


def test_prune_drops_idle_records():
    guard = AbuseGuard()
    guard.check_and_record("628111", "halo", now=100.0)
    guard.check_and_record("628222", "halo", now=150.0)

    removed = guard.prune(now=161.0)

    assert removed == 1
    assert guard.record_for("628111") is None
    assert guard.record_for("628222") is not None
    assert len(guard) == 1


def test_prune_keeps_banned_sender_until_ban_ends():
    guard = AbuseGuard(GuardLimits(cooldown_sec=0.0, max_messages=2, ban_duration_sec=600.0))
    for offset in range(3):
        guard.check_and_record("628111", "x", now=100.0 + offset)

    assert guard.prune(now=500.0) == 0
    assert guard.check_and_record("628111", "x", now=500.0).reason == abuse_guard.BANNED

    assert guard.prune(now=703.0) == 1
    assert len(guard) == 0


def test_pruned_sender_starts_fresh():
    guard = AbuseGuard(GuardLimits(cooldown_sec=0.0, max_messages=2))
    guard.check_and_record("628111", "a", now=100.0)
    guard.check_and_record("628111", "b", now=101.0)
    guard.prune(now=200.0)

    decision = guard.check_and_record("628111", "c", now=200.0)

    assert decision.allow is True
    assert guard.record_for("628111").message_count == 1

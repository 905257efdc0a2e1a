from infra.config import Settings
from state.watchdog import Watchdog, WatchdogDecision, WatchdogKind, WatchdogSet, decide, elapsed_ratio


def test_decision_uses_elapsed_ratio_threshold() -> None:
    assert decide(2.4, 3.0, 0.8) == WatchdogDecision.COMPLETE
    assert decide(2.0, 3.0, 0.8) == WatchdogDecision.REPOLL
    assert elapsed_ratio(1.0, 0.0) == float("inf")


def test_ratio_at_threshold_completes_despite_float_rounding() -> None:
    assert 2.4 / 3.0 < 0.8
    assert decide(2.4, 3.0, 0.8) == WatchdogDecision.COMPLETE
    assert decide(4.4, 5.5, 0.8) == WatchdogDecision.COMPLETE
    assert decide(2.3999, 3.0, 0.8) == WatchdogDecision.REPOLL


def test_watchdog_set_arms_delays_from_estimate(scheduler) -> None:
    fired: list[Watchdog] = []
    watchdogs = WatchdogSet(scheduler=scheduler, tuning=Settings().watchdog, on_fire=fired.append)
    watchdogs.arm(session_id="abc", iteration=0, estimated_duration_s=10.0, loop_enabled=True)

    scheduler.advance(11.5)
    assert [watchdog.kind for watchdog in fired] == [WatchdogKind.LOOP_PROTECTION]
    scheduler.advance(3.6)
    assert [watchdog.kind for watchdog in fired] == [WatchdogKind.LOOP_PROTECTION, WatchdogKind.FALLBACK]


def test_non_looping_arms_fallback_only(scheduler) -> None:
    watchdogs = WatchdogSet(scheduler=scheduler, tuning=Settings().watchdog, on_fire=lambda _: None)
    watchdogs.arm(session_id="abc", iteration=0, estimated_duration_s=3.0, loop_enabled=False)
    assert watchdogs.armed_kinds == {WatchdogKind.FALLBACK}
    assert watchdogs.get(WatchdogKind.LOOP_PROTECTION) is None


def test_rearm_invalidates_previous_iteration(scheduler) -> None:
    fired: list[Watchdog] = []
    watchdogs = WatchdogSet(scheduler=scheduler, tuning=Settings().watchdog, on_fire=fired.append)
    watchdogs.arm(session_id="abc", iteration=0, estimated_duration_s=3.0, loop_enabled=False)
    old = watchdogs.get(WatchdogKind.FALLBACK)
    watchdogs.arm(session_id="abc", iteration=1, estimated_duration_s=3.0, loop_enabled=False)

    assert not watchdogs.is_current(old)
    scheduler.advance(5.0)
    assert [watchdog.iteration for watchdog in fired] == [1]


def test_cancel_all_stops_everything(scheduler) -> None:
    fired: list[Watchdog] = []
    watchdogs = WatchdogSet(scheduler=scheduler, tuning=Settings().watchdog, on_fire=fired.append)
    watchdogs.arm(session_id="abc", iteration=0, estimated_duration_s=3.0, loop_enabled=True)
    watchdogs.cancel_all()
    scheduler.advance(60.0)
    assert fired == []
    assert watchdogs.armed_kinds == set()


def test_reschedule_counts_repolls(scheduler) -> None:
    fired: list[Watchdog] = []
    watchdog = Watchdog(
        kind=WatchdogKind.FALLBACK,
        session_id="abc",
        iteration=0,
        scheduler=scheduler,
        on_fire=fired.append,
    )
    watchdog.arm(1.0)
    scheduler.advance(1.0)
    watchdog.reschedule(0.5)
    assert watchdog.repolls == 1
    assert watchdog.armed
    scheduler.advance(0.5)
    assert len(fired) == 2
    assert not watchdog.armed

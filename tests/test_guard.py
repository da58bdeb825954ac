"""
Tests for the guard controller in its three role configurations
"""
from datetime import timedelta

import pytest

from farmgate.access_policy import AccessDecision, GuardRole
from farmgate.errors import FeedUnavailable
from farmgate.guard import (
    GuardController,
    GuardState,
    RenderState,
    Route,
    dashboard_guard,
    general_subscription_guard,
    payment_surface_guard,
)
from farmgate.record_feed import InMemoryRecordFeed, Subscription
from tests.conftest import NOW, trial_record

ACTIVE = {"isPaid": True, "subscriptionStatus": "active", "paidAt": NOW - timedelta(days=10)}
PENDING = {"isPaid": False, "subscriptionStatus": "pending_payment"}


def build(factory, identity_state, feed, navigator, clock, reporter=None):
    guard = factory(identity_state, feed, navigator, clock=clock, error_reporter=reporter)
    return guard.mount()


# -----------------------------
# end-to-end scenarios
# -----------------------------
def test_paid_active_dashboard_renders_children(identity_state, feed, navigator, clock, alice):
    feed.put("alice", ACTIVE)
    guard = build(dashboard_guard, identity_state, feed, navigator, clock)
    identity_state.sign_in(alice)

    assert guard.state is GuardState.DECIDED
    assert guard.decision is AccessDecision.GRANT
    assert guard.render is RenderState.CHILDREN
    assert navigator.routes == []


def test_paid_active_payment_surface_sends_back_to_dashboard(identity_state, feed, navigator, clock, alice):
    feed.put("alice", ACTIVE)
    guard = build(payment_surface_guard, identity_state, feed, navigator, clock)
    identity_state.sign_in(alice)

    assert guard.decision is AccessDecision.REDIRECT_TO_DASHBOARD
    assert guard.render is RenderState.NOTHING
    assert navigator.routes == [Route.DASHBOARD]


def test_expired_trial_dashboard_redirects_to_payment(identity_state, feed, navigator, clock, alice):
    feed.put("alice", trial_record(NOW - timedelta(days=3)))
    guard = build(dashboard_guard, identity_state, feed, navigator, clock)
    identity_state.sign_in(alice)

    assert guard.decision is AccessDecision.REDIRECT_TO_PAYMENT
    assert guard.render is RenderState.NOTHING
    assert navigator.routes == [Route.PAYMENT]


def test_pending_payment_shows_payment_form(identity_state, feed, navigator, clock, alice):
    feed.put("alice", PENDING)
    dash_nav = type(navigator)()
    dash = build(dashboard_guard, identity_state, feed, dash_nav, clock)
    pay = build(payment_surface_guard, identity_state, feed, navigator, clock)
    identity_state.sign_in(alice)

    assert dash.decision is AccessDecision.REDIRECT_TO_PAYMENT
    assert dash_nav.routes == [Route.PAYMENT]
    assert pay.decision is AccessDecision.REDIRECT_TO_PAYMENT
    assert pay.render is RenderState.CHILDREN
    assert navigator.routes == []


def test_no_record_dashboard_loads_forever(identity_state, feed, navigator, clock, alice):
    guard = build(dashboard_guard, identity_state, feed, navigator, clock)
    identity_state.sign_in(alice)
    feed.emit("alice")
    feed.emit("alice")

    assert guard.state is GuardState.DECIDED
    assert guard.decision is AccessDecision.INDETERMINATE
    assert guard.render is RenderState.LOADING
    assert navigator.routes == []


def test_no_record_general_guard_goes_home(identity_state, feed, navigator, clock, alice):
    guard = build(general_subscription_guard, identity_state, feed, navigator, clock)
    identity_state.sign_in(alice)

    assert guard.decision is AccessDecision.INDETERMINATE
    assert guard.render is RenderState.NOTHING
    assert navigator.routes == [Route.DASHBOARD]


def test_malformed_record_treated_as_absent(identity_state, feed, navigator, clock, alice):
    feed.put("alice", {"subscriptionStatus": "trial"})
    general = build(general_subscription_guard, identity_state, feed, navigator, clock)
    identity_state.sign_in(alice)

    assert general.decision is AccessDecision.INDETERMINATE
    assert navigator.routes == [Route.DASHBOARD]


# -----------------------------
# state machine
# -----------------------------
def test_pending_identity_is_unresolved(identity_state, feed, navigator, clock):
    guard = build(dashboard_guard, identity_state, feed, navigator, clock)

    assert guard.state is GuardState.UNRESOLVED
    assert guard.render is RenderState.LOADING
    assert feed.subscriber_count("alice") == 0
    assert navigator.routes == []


def test_no_navigation_before_first_snapshot(identity_state, navigator, clock, alice):
    feed = InMemoryRecordFeed({"alice": trial_record(NOW - timedelta(days=5))}, auto_emit=False)
    guard = build(dashboard_guard, identity_state, feed, navigator, clock)
    identity_state.sign_in(alice)

    assert guard.state is GuardState.LOADING
    assert guard.render is RenderState.LOADING
    assert navigator.routes == []

    feed.emit("alice")
    assert guard.state is GuardState.DECIDED
    assert navigator.routes == [Route.PAYMENT]


def test_mount_after_identity_resolved_subscribes_immediately(identity_state, feed, navigator, clock, alice):
    feed.put("alice", ACTIVE)
    identity_state.sign_in(alice)
    guard = build(dashboard_guard, identity_state, feed, navigator, clock)

    assert guard.render is RenderState.CHILDREN
    assert feed.subscriber_count("alice") == 1


def test_every_snapshot_is_re_evaluated(identity_state, feed, navigator, clock, alice):
    feed.put("alice", trial_record(NOW - timedelta(hours=1)))
    dash = build(dashboard_guard, identity_state, feed, navigator, clock)
    identity_state.sign_in(alice)
    assert dash.render is RenderState.CHILDREN

    # user reports a manual payment
    feed.put("alice", PENDING)
    assert dash.decision is AccessDecision.REDIRECT_TO_PAYMENT
    assert navigator.routes == [Route.PAYMENT]

    # billing approves it
    feed.put("alice", ACTIVE)
    assert dash.decision is AccessDecision.GRANT
    assert dash.render is RenderState.CHILDREN
    assert navigator.routes == [Route.PAYMENT]


def test_decision_uses_clock_at_snapshot_time(identity_state, feed, navigator, clock, alice):
    feed.put("alice", trial_record(NOW - timedelta(days=1)))
    guard = build(dashboard_guard, identity_state, feed, navigator, clock)
    identity_state.sign_in(alice)
    assert guard.decision is AccessDecision.GRANT

    clock.advance(timedelta(days=2))
    feed.emit("alice")
    assert guard.decision is AccessDecision.REDIRECT_TO_PAYMENT
    assert navigator.routes == [Route.PAYMENT]


def test_repeated_redirects_navigate_once(identity_state, feed, navigator, clock, alice):
    feed.put("alice", PENDING)
    build(dashboard_guard, identity_state, feed, navigator, clock)
    identity_state.sign_in(alice)
    feed.emit("alice")
    feed.put("alice", trial_record(NOW - timedelta(days=9)))

    assert navigator.routes == [Route.PAYMENT]


def test_on_change_reports_views(identity_state, navigator, clock, alice):
    feed = InMemoryRecordFeed({"alice": PENDING}, auto_emit=False)
    guard = dashboard_guard(identity_state, feed, navigator, clock=clock)
    views = []
    guard.on_change(views.append)
    guard.mount()

    identity_state.sign_in(alice)
    feed.emit("alice")

    assert [v.state for v in views] == [GuardState.LOADING, GuardState.DECIDED]
    assert views[-1].navigate is Route.PAYMENT
    assert views[-1].as_dict()["decision"] == "redirect_to_payment"
    assert views[-1].identity_id == "alice"


# -----------------------------
# identity changes and teardown
# -----------------------------
class LeakyFeed:
    """Keeps delivering to callbacks after unsubscribe, like a late network callback."""

    def __init__(self):
        self.callbacks = {}

    def subscribe(self, identity_id, on_snapshot, on_error=None):
        self.callbacks[identity_id] = (on_snapshot, on_error)
        return Subscription(identity_id, lambda _snapshot: None)


def test_delayed_snapshot_from_previous_identity_is_dropped(identity_state, navigator, clock, alice, bob):
    from farmgate.access_policy import snapshot_from_mapping

    feed = LeakyFeed()
    guard = build(dashboard_guard, identity_state, feed, navigator, clock)

    identity_state.sign_in(alice)
    alice_deliver, alice_fail = feed.callbacks["alice"]

    identity_state.sign_in(bob)
    bob_deliver, _ = feed.callbacks["bob"]
    bob_deliver(snapshot_from_mapping(ACTIVE))
    assert guard.decision is AccessDecision.GRANT

    # alice's feed fires late with an expired trial and then an error
    alice_deliver(snapshot_from_mapping(trial_record(NOW - timedelta(days=10))))
    alice_fail(FeedUnavailable("alice"))

    assert guard.identity_id == "bob"
    assert guard.decision is AccessDecision.GRANT
    assert guard.render is RenderState.CHILDREN
    assert navigator.routes == []


def test_identity_switch_closes_old_feed_first(identity_state, feed, navigator, clock, alice, bob):
    feed.put("alice", trial_record(NOW - timedelta(days=9)))
    feed.put("bob", ACTIVE)
    guard = build(dashboard_guard, identity_state, feed, navigator, clock)

    identity_state.sign_in(alice)
    assert navigator.routes == [Route.PAYMENT]
    epoch = guard.epoch

    identity_state.sign_in(bob)
    assert guard.epoch > epoch
    assert feed.subscriber_count("alice") == 0
    assert feed.subscriber_count("bob") == 1
    assert guard.render is RenderState.CHILDREN

    feed.put("alice", PENDING)
    assert guard.decision is AccessDecision.GRANT


def test_same_identity_resolved_again_keeps_feed(identity_state, feed, navigator, clock, alice):
    feed.put("alice", ACTIVE)
    guard = build(dashboard_guard, identity_state, feed, navigator, clock)
    identity_state.sign_in(alice)
    epoch = guard.epoch

    identity_state.sign_in(type(alice)(uid="alice", email="alice@example.com", via="pin", pin_code="1234"))
    assert guard.epoch == epoch
    assert feed.subscriber_count("alice") == 1


def test_sign_out_tears_down_and_routes_to_login(identity_state, feed, navigator, clock, alice):
    feed.put("alice", ACTIVE)
    guard = build(dashboard_guard, identity_state, feed, navigator, clock)
    identity_state.sign_in(alice)

    identity_state.sign_out()

    assert guard.state is GuardState.UNRESOLVED
    assert guard.decision is None
    assert guard.render is RenderState.NOTHING
    assert feed.subscriber_count("alice") == 0
    assert navigator.routes == [Route.LOGIN]


def test_unmount_unsubscribes(identity_state, feed, navigator, clock, alice):
    feed.put("alice", ACTIVE)
    guard = build(dashboard_guard, identity_state, feed, navigator, clock)
    identity_state.sign_in(alice)

    guard.unmount()
    assert feed.subscriber_count("alice") == 0

    feed.put("alice", PENDING)
    identity_state.sign_out()
    assert guard.state is GuardState.UNRESOLVED
    assert navigator.routes == []


def test_context_manager_mounts_and_unmounts(identity_state, feed, navigator, clock, alice):
    feed.put("alice", ACTIVE)
    identity_state.sign_in(alice)
    with GuardController(GuardRole.GENERAL, identity_state, feed, navigator, clock=clock) as guard:
        assert guard.render is RenderState.CHILDREN
        assert feed.subscriber_count("alice") == 1
    assert feed.subscriber_count("alice") == 0


# -----------------------------
# feed failures
# -----------------------------
@pytest.mark.parametrize("factory", [dashboard_guard, payment_surface_guard, general_subscription_guard])
def test_feed_failure_never_grants(factory, identity_state, feed, navigator, clock, reporter, alice):
    feed.put("alice", ACTIVE)
    guard = build(factory, identity_state, feed, navigator, clock, reporter)
    identity_state.sign_in(alice)
    navigator.routes.clear()

    feed.fail("alice", ConnectionError("store offline"))

    assert guard.decision is AccessDecision.INDETERMINATE
    assert guard.render is RenderState.LOADING
    assert navigator.routes == []
    assert len(reporter.errors) == 1
    context, error = reporter.errors[0]
    assert "alice" in context
    assert isinstance(error, FeedUnavailable)
    assert isinstance(error.cause, ConnectionError)
    # subscription kept open for the feed's own retry
    assert feed.subscriber_count("alice") == 1


def test_general_guard_keeps_loading_on_failure_without_record(identity_state, feed, navigator, clock, reporter, alice):
    navigator_before = list(navigator.routes)
    feed_no_emit = InMemoryRecordFeed(auto_emit=False)
    guard = build(general_subscription_guard, identity_state, feed_no_emit, navigator, clock, reporter)
    identity_state.sign_in(alice)

    feed_no_emit.fail("alice")

    assert guard.render is RenderState.LOADING
    assert navigator.routes == navigator_before


def test_recovery_after_failure(identity_state, feed, navigator, clock, reporter, alice):
    feed.put("alice", trial_record(NOW - timedelta(hours=3)))
    guard = build(dashboard_guard, identity_state, feed, navigator, clock, reporter)
    identity_state.sign_in(alice)

    feed.fail("alice")
    assert guard.render is RenderState.LOADING

    feed.emit("alice")
    assert guard.render is RenderState.CHILDREN
    assert navigator.routes == []


# -----------------------------
# clock-driven re-evaluation
# -----------------------------
def test_recheck_moves_running_trial_to_payment(identity_state, feed, navigator, clock, alice):
    feed.put("alice", trial_record(NOW - timedelta(hours=1)))
    guard = build(dashboard_guard, identity_state, feed, navigator, clock)
    identity_state.sign_in(alice)
    assert guard.decision is AccessDecision.GRANT

    guard.recheck()
    assert guard.decision is AccessDecision.GRANT

    clock.advance(timedelta(days=2))
    guard.recheck()
    assert guard.decision is AccessDecision.REDIRECT_TO_PAYMENT
    assert navigator.routes == [Route.PAYMENT]


def test_recheck_without_snapshot_does_nothing(identity_state, reporter, navigator, clock, alice):
    feed = InMemoryRecordFeed({"alice": trial_record(NOW - timedelta(hours=1))}, auto_emit=False)
    guard = build(dashboard_guard, identity_state, feed, navigator, clock, reporter)
    identity_state.sign_in(alice)

    guard.recheck()
    assert guard.state is GuardState.LOADING

    # after a failure the old snapshot is not trusted either
    feed.emit("alice")
    feed.fail("alice")
    clock.advance(timedelta(hours=1))
    guard.recheck()
    assert guard.decision is AccessDecision.INDETERMINATE
    assert guard.render is RenderState.LOADING


# -----------------------------
# re-entrant identity switch
# -----------------------------
class SwitchingNavigator:
    """Signs in another identity the first time it is asked to navigate."""

    def __init__(self, identity_state, identity):
        self.identity_state = identity_state
        self.identity = identity
        self.routes = []

    def navigate(self, route):
        self.routes.append(route)
        if len(self.routes) == 1:
            self.identity_state.sign_in(self.identity)


def test_identity_switch_during_first_delivery_keeps_new_feed(identity_state, feed, clock, alice, bob):
    feed.put("alice", trial_record(NOW - timedelta(days=9)))
    feed.put("bob", ACTIVE)
    navigator = SwitchingNavigator(identity_state, bob)
    guard = build(dashboard_guard, identity_state, feed, navigator, clock)

    identity_state.sign_in(alice)

    assert navigator.routes == [Route.PAYMENT]
    assert guard.identity_id == "bob"
    assert guard.decision is AccessDecision.GRANT
    assert feed.subscriber_count("alice") == 0
    assert feed.subscriber_count("bob") == 1

    guard.unmount()
    assert feed.subscriber_count("bob") == 0

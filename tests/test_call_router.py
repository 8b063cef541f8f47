"""
Unit tests for call routing.
"""

from datetime import datetime, timezone

import pytest

from callflow.core.call_router import CallRouter, _in_window, format_phone_number
from callflow.core.phone_agent import PhoneAgent
from callflow.errors import InvalidRoutingRuleError, NoRouteAvailableError, RouteNotFoundError
from callflow.models.call import (
    IncomingCall,
    PhoneAgentConfig,
    Route,
    RoutingActionType,
    RoutingRule,
)
from callflow.services.speech import PassthroughSpeechCodec

# A Monday, 10:30 UTC
MONDAY_MORNING = datetime(2024, 5, 6, 10, 30, tzinfo=timezone.utc)


@pytest.fixture
def router(conversation_handler):
    def build_agent(config):
        return PhoneAgent(config, conversation_handler, PassthroughSpeechCodec())

    return CallRouter(build_agent, clock=lambda: MONDAY_MORNING)


def make_route(business_id, **fields):
    return Route(agent_config=PhoneAgentConfig(business_id=business_id), **fields)


def incoming(business_id, from_number="+15551234567", to_number="+15550100"):
    return IncomingCall(from_number=from_number, to_number=to_number, business_id=business_id)


@pytest.mark.asyncio
async def test_wildcard_route_takes_call(router, business_id):
    route = router.register_route(make_route(business_id))
    assert route.call_count == 0

    outcome = await router.route_call(incoming(business_id))

    assert outcome.action == RoutingActionType.ROUTE_TO_AGENT
    assert outcome.route_id == route.id
    assert outcome.call.route_id == route.id
    assert route.call_count == 1
    assert route.last_used == MONDAY_MORNING


@pytest.mark.asyncio
async def test_pattern_match_beats_priority(router, business_id):
    router.register_route(make_route(business_id, pattern="9999", priority=10))
    sales = router.register_route(make_route(business_id, pattern="0100", priority=1))

    outcome = await router.route_call(incoming(business_id))

    assert outcome.route_id == sales.id


@pytest.mark.asyncio
async def test_regex_route_matches_caller_name(router, business_id):
    router.register_route(make_route(business_id, pattern="9999"))
    vip = router.register_route(make_route(business_id, pattern=r"^VIP", is_regex=True))
    call = IncomingCall(
        from_number="+15551234567", to_number="+15550100", business_id=business_id, caller_name="VIP Client"
    )

    outcome = await router.route_call(call)

    assert outcome.route_id == vip.id


@pytest.mark.asyncio
async def test_highest_priority_route_when_nothing_matches(router, business_id):
    router.register_route(make_route(business_id, pattern="1111", priority=1))
    high = router.register_route(make_route(business_id, pattern="2222", priority=5))

    outcome = await router.route_call(incoming(business_id))

    assert outcome.route_id == high.id


@pytest.mark.asyncio
async def test_routes_of_other_businesses_are_ignored(router, business_id):
    own = router.register_route(make_route(business_id, pattern="9999"))
    router.register_route(
        Route(
            business_id="other-business",
            agent_config=PhoneAgentConfig(business_id="other-business"),
            priority=10,
        )
    )

    outcome = await router.route_call(incoming(business_id))

    assert outcome.route_id == own.id


@pytest.mark.asyncio
async def test_rule_outside_allowed_days_is_never_selected(router, business_id):
    route = router.register_route(make_route(business_id))
    router.add_routing_rule(
        RoutingRule(
            name="Weekend voicemail",
            priority=100,
            conditions={"day_of_week": [0, 6]},
            action={"type": "take_voicemail", "voicemail_greeting": "We're closed"},
        )
    )

    outcome = await router.route_call(incoming(business_id))

    assert outcome.action == RoutingActionType.ROUTE_TO_AGENT
    assert outcome.route_id == route.id


@pytest.mark.asyncio
async def test_matching_rule_routes_to_human(router, business_id):
    route = router.register_route(make_route(business_id))
    rule = router.add_routing_rule(
        RoutingRule(
            name="Business hours",
            conditions={"time_of_day": {"start": "09:00", "end": "17:00"}, "day_of_week": [1, 2, 3, 4, 5]},
            action={"type": "route_to_human", "human_extension": "201"},
        )
    )

    outcome = await router.route_call(incoming(business_id))

    assert outcome.action == RoutingActionType.ROUTE_TO_HUMAN
    assert outcome.rule_id == rule.id
    assert outcome.human_extension == "201"
    assert outcome.call is None
    assert route.call_count == 0


@pytest.mark.asyncio
async def test_rule_to_agent_opens_session(router, business_id):
    router.register_route(make_route(business_id))
    support = router.register_route(make_route(business_id, pattern="9999"))
    router.add_routing_rule(
        RoutingRule(
            name="Known callers",
            conditions={"caller_number_pattern": r"^\+1555"},
            action={"type": "route_to_agent", "agent_id": support.id},
        )
    )

    outcome = await router.route_call(incoming(business_id))

    assert outcome.route_id == support.id
    assert support.call_count == 1


@pytest.mark.asyncio
async def test_rule_priority_order(router, business_id):
    router.register_route(make_route(business_id))
    router.add_routing_rule(
        RoutingRule(name="Low", priority=1, action={"type": "play_message", "message_text": "low"})
    )
    router.add_routing_rule(
        RoutingRule(name="High", priority=9, action={"type": "play_message", "message_text": "high"})
    )

    outcome = await router.route_call(incoming(business_id))

    assert outcome.message_text == "high"


@pytest.mark.asyncio
async def test_rule_timezone_is_applied(router, business_id):
    router.register_route(make_route(business_id))
    # 10:30 UTC is 06:30 in New York
    router.add_routing_rule(
        RoutingRule(
            name="Early calls",
            conditions={"time_of_day": {"start": "06:00", "end": "07:00"}, "timezone": "America/New_York"},
            action={"type": "play_message", "message_text": "early"},
        )
    )

    outcome = await router.route_call(incoming(business_id))

    assert outcome.action == RoutingActionType.PLAY_MESSAGE


@pytest.mark.asyncio
async def test_rule_to_inactive_route_falls_back_to_default(router, business_id):
    default = router.register_route(make_route(business_id, is_default=True))
    paused = router.register_route(make_route(business_id, pattern="9999"))
    router.add_routing_rule(
        RoutingRule(name="Paused", action={"type": "route_to_agent", "agent_id": paused.id})
    )
    router.deactivate_route(paused.id)

    outcome = await router.route_call(incoming(business_id))

    assert outcome.action == RoutingActionType.FALLBACK_ROUTE
    assert outcome.route_id == default.id
    assert outcome.call is not None


@pytest.mark.asyncio
async def test_no_route_available(router, business_id):
    with pytest.raises(NoRouteAvailableError):
        await router.route_call(incoming(business_id))


def test_invalid_rules_are_rejected(router):
    with pytest.raises(InvalidRoutingRuleError) as exc_info:
        router.add_routing_rule(RoutingRule(name="Broken", action={"type": "route_to_agent"}))
    assert exc_info.value.errors == ["route_to_agent requires agent_id"]

    with pytest.raises(InvalidRoutingRuleError):
        router.add_routing_rule(
            RoutingRule(
                name="Bad zone",
                conditions={"timezone": "Mars/Olympus"},
                action={"type": "route_to_human", "human_extension": "1"},
            )
        )
    assert router.rules == []


def test_rule_condition_validation():
    with pytest.raises(ValueError):
        RoutingRule(name="Days", conditions={"day_of_week": [7]}, action={"type": "take_voicemail"})
    with pytest.raises(ValueError):
        RoutingRule(name="Regex", conditions={"caller_number_pattern": "(+"}, action={"type": "take_voicemail"})
    with pytest.raises(ValueError):
        RoutingRule(
            name="Time",
            conditions={"time_of_day": {"start": "9am", "end": "17:00"}},
            action={"type": "take_voicemail"},
        )


def test_default_route_management(router, business_id):
    first = router.register_route(make_route(business_id))
    second = router.register_route(make_route(business_id, pattern="9999"))
    assert router.default_route_id == first.id

    router.set_default_route(second.id)
    assert first.is_default is False
    assert second.is_default is True

    router.remove_route(second.id)
    assert router.default_route_id == first.id
    with pytest.raises(RouteNotFoundError):
        router.get_route(second.id)


def test_update_route_reconfigures_agent(router, business_id):
    route = router.register_route(make_route(business_id))

    router.update_route(route.id, agent_config={"business_id": business_id, "welcome_message": "Hi!"}, priority=3)

    assert route.priority == 3
    assert route.agent.config.welcome_message == "Hi!"
    with pytest.raises(ValueError):
        router.update_route(route.id, call_count=10)


@pytest.mark.asyncio
async def test_history_and_stats(router, business_id):
    route = router.register_route(make_route(business_id))
    first = incoming(business_id)
    second = incoming(business_id)
    await router.route_call(first)
    await router.route_call(second)

    assert [c.call_id for c in router.get_call_history()] == [second.call_id, first.call_id]
    assert router.get_call_history(limit=1)[0].call_id == second.call_id

    stats = router.get_routing_stats()
    assert stats.total_routes == 1
    assert stats.route_distribution == {route.id: 2}
    assert router.get_route_utilization()[0]["share"] == 100.0


def test_in_window_handles_overnight():
    assert _in_window("23:15", "22:00", "06:00") is True
    assert _in_window("05:59", "22:00", "06:00") is True
    assert _in_window("12:00", "22:00", "06:00") is False
    assert _in_window("12:00", "09:00", "17:00") is True


def test_format_phone_number():
    assert format_phone_number("+1 555 123 4567") == "(555) 123-4567"
    assert format_phone_number("5551234567") == "(555) 123-4567"
    assert format_phone_number("+44 20 7946 0958") == "+44 20 7946 0958"

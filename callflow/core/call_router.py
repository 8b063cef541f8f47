"""
Inbound call routing.

Routing runs in three stages. Active routing rules are tried in priority
order and the first whose conditions all hold decides the outcome. Without a
matching rule, registered routes are matched by number or caller-name
pattern, then the highest-priority active route, then the default route. If
anything goes wrong on the way the call falls back to the default route.
"""

import asyncio
import logging
import re
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from callflow.config.constants import LOGGER_NAME, WILDCARD
from callflow.errors import (
    InvalidRoutingRuleError,
    NoRouteAvailableError,
    RouteNotFoundError,
    RoutingRuleNotFoundError,
)
from callflow.models.call import (
    IncomingCall,
    PhoneAgentConfig,
    Route,
    RoutingActionType,
    RoutingOutcome,
    RoutingRule,
    RoutingStats,
)

logger = logging.getLogger(LOGGER_NAME)

# Builds the phone agent that serves a route
AgentFactory = Callable[[PhoneAgentConfig], Any]


def _local_now() -> datetime:
    return datetime.now().astimezone()


def format_phone_number(number: str) -> str:
    """Format North American numbers as (XXX) XXX-XXXX; leave others untouched."""
    digits = re.sub(r"\D", "", number)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) == 10:
        return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"
    return number


def _in_window(current: str, start: str, end: str) -> bool:
    if start <= end:
        return start <= current <= end
    # Overnight window such as 22:00-06:00
    return current >= start or current <= end


class CallRouter:
    """Owns the routing table and the routing rules."""

    def __init__(self, agent_factory: AgentFactory, clock: Callable[[], datetime] = _local_now):
        self.agent_factory = agent_factory
        self.clock = clock
        self.routes: Dict[str, Route] = {}
        self.rules: List[RoutingRule] = []
        self.default_route_id: Optional[str] = None
        self.call_history: List[IncomingCall] = []
        self._lock = asyncio.Lock()

    # Route management

    def register_route(self, route: Route) -> Route:
        if route.agent is None:
            route.agent = self.agent_factory(route.agent_config)
        self.routes[route.id] = route
        if route.is_default or self.default_route_id is None:
            self.set_default_route(route.id)
        logger.info(f"Registered route {route.id} for pattern '{route.pattern}' (business {route.business_id})")
        return route

    def get_route(self, route_id: str) -> Route:
        try:
            return self.routes[route_id]
        except KeyError:
            raise RouteNotFoundError(route_id) from None

    def get_routes(self, business_id: Optional[str] = None) -> List[Route]:
        routes = sorted(self.routes.values(), key=lambda r: r.priority, reverse=True)
        if business_id is None:
            return routes
        return [r for r in routes if r.business_id in (business_id, WILDCARD)]

    def update_route(self, route_id: str, **changes) -> Route:
        route = self.get_route(route_id)
        if "agent_config" in changes:
            config = changes["agent_config"]
            if isinstance(config, dict):
                config = PhoneAgentConfig(**config)
            changes["agent_config"] = config
            if route.agent is not None and hasattr(route.agent, "update_config"):
                route.agent.update_config(**config.model_dump())
        for field, value in changes.items():
            if field not in Route.model_fields or field in ("id", "agent", "call_count"):
                raise ValueError(f"Route field '{field}' cannot be updated")
            setattr(route, field, value)
        if changes.get("is_default"):
            self.set_default_route(route_id)
        return route

    def activate_route(self, route_id: str) -> Route:
        route = self.get_route(route_id)
        route.is_active = True
        return route

    def deactivate_route(self, route_id: str) -> Route:
        route = self.get_route(route_id)
        route.is_active = False
        logger.info(f"Deactivated route {route_id}")
        return route

    def remove_route(self, route_id: str) -> None:
        self.get_route(route_id)
        del self.routes[route_id]
        if self.default_route_id == route_id:
            self.default_route_id = next(iter(self.routes), None)
            if self.default_route_id:
                self.routes[self.default_route_id].is_default = True
        logger.info(f"Removed route {route_id}")

    def set_default_route(self, route_id: str) -> None:
        route = self.get_route(route_id)
        for other in self.routes.values():
            other.is_default = False
        route.is_default = True
        self.default_route_id = route_id

    # Rule management

    def validate_routing_rule(self, rule: RoutingRule) -> List[str]:
        errors = []
        if not rule.name.strip():
            errors.append("Rule name is required")
        action = rule.action
        if action.type == RoutingActionType.ROUTE_TO_AGENT:
            if not action.agent_id:
                errors.append("route_to_agent requires agent_id")
            elif action.agent_id not in self.routes:
                errors.append(f"Unknown route '{action.agent_id}'")
        elif action.type == RoutingActionType.ROUTE_TO_HUMAN and not action.human_extension:
            errors.append("route_to_human requires human_extension")
        elif action.type == RoutingActionType.PLAY_MESSAGE and not action.message_text:
            errors.append("play_message requires message_text")
        elif action.type == RoutingActionType.FALLBACK_ROUTE:
            errors.append("fallback_route is not a rule action")
        if rule.conditions.timezone:
            try:
                ZoneInfo(rule.conditions.timezone)
            except (KeyError, ValueError):
                errors.append(f"Unknown timezone '{rule.conditions.timezone}'")
        return errors

    def _sort_rules(self) -> None:
        self.rules.sort(key=lambda r: r.priority, reverse=True)

    def add_routing_rule(self, rule: RoutingRule) -> RoutingRule:
        errors = self.validate_routing_rule(rule)
        if errors:
            raise InvalidRoutingRuleError(errors)
        self.rules.append(rule)
        self._sort_rules()
        logger.info(f"Added routing rule {rule.id} '{rule.name}' with priority {rule.priority}")
        return rule

    def get_rule(self, rule_id: str) -> RoutingRule:
        for rule in self.rules:
            if rule.id == rule_id:
                return rule
        raise RoutingRuleNotFoundError(rule_id)

    def update_routing_rule(self, rule_id: str, **changes) -> RoutingRule:
        current = self.get_rule(rule_id)
        updated = RoutingRule(**{**current.model_dump(), **changes, "id": rule_id})
        errors = self.validate_routing_rule(updated)
        if errors:
            raise InvalidRoutingRuleError(errors)
        self.rules[self.rules.index(current)] = updated
        self._sort_rules()
        return updated

    def remove_routing_rule(self, rule_id: str) -> None:
        self.rules.remove(self.get_rule(rule_id))
        logger.info(f"Removed routing rule {rule_id}")

    # Routing

    async def route_call(self, incoming: IncomingCall) -> RoutingOutcome:
        """Decide how an inbound call is handled and open an agent session if needed.

        Raises:
            NoRouteAvailableError: Routing failed and no default route exists
        """
        async with self._lock:
            self.call_history.append(incoming)
            try:
                return await self._route(incoming)
            except Exception as e:
                default = self.routes.get(self.default_route_id) if self.default_route_id else None
                if default is None:
                    logger.error(f"Routing failed for call {incoming.call_id} with no default route: {e}")
                    if isinstance(e, NoRouteAvailableError):
                        raise
                    raise NoRouteAvailableError(str(e)) from e
                logger.warning(f"Routing failed for call {incoming.call_id}, using default route: {e}")
                call = await self._open_session(default, incoming)
                return RoutingOutcome(
                    action=RoutingActionType.FALLBACK_ROUTE, route_id=default.id, call=call
                )

    async def _route(self, incoming: IncomingCall) -> RoutingOutcome:
        now = self.clock()
        for rule in self.rules:
            if rule.is_active and self._rule_matches(rule, incoming, now):
                logger.info(f"Call {incoming.call_id} matched routing rule '{rule.name}'")
                return await self._apply_rule(rule, incoming)

        route = self._select_route(incoming)
        call = await self._open_session(route, incoming)
        return RoutingOutcome(action=RoutingActionType.ROUTE_TO_AGENT, route_id=route.id, call=call)

    def _rule_matches(self, rule: RoutingRule, incoming: IncomingCall, now: datetime) -> bool:
        conditions = rule.conditions
        moment = now.astimezone(ZoneInfo(conditions.timezone)) if conditions.timezone else now

        if conditions.business_id and conditions.business_id not in (WILDCARD, incoming.business_id):
            return False
        if conditions.time_of_day is not None:
            window = conditions.time_of_day
            if not _in_window(moment.strftime("%H:%M"), window.start, window.end):
                return False
        if conditions.day_of_week is not None:
            # datetime.weekday() is Monday=0; rules use Sunday=0
            if (moment.weekday() + 1) % 7 not in conditions.day_of_week:
                return False
        if conditions.caller_number_pattern:
            if not re.search(conditions.caller_number_pattern, incoming.from_number):
                return False
        return True

    async def _apply_rule(self, rule: RoutingRule, incoming: IncomingCall) -> RoutingOutcome:
        action = rule.action
        if action.type == RoutingActionType.ROUTE_TO_AGENT:
            route = self.get_route(action.agent_id)
            if not route.is_active:
                raise RouteNotFoundError(action.agent_id)
            call = await self._open_session(route, incoming)
            return RoutingOutcome(action=action.type, route_id=route.id, rule_id=rule.id, call=call)
        return RoutingOutcome(
            action=action.type,
            rule_id=rule.id,
            human_extension=action.human_extension,
            message_text=action.message_text,
            voicemail_greeting=action.voicemail_greeting,
        )

    @staticmethod
    def _matches_pattern(route: Route, incoming: IncomingCall) -> bool:
        if route.pattern == WILDCARD:
            return True
        if route.is_regex:
            candidates = [incoming.to_number, incoming.from_number, incoming.caller_name or ""]
            return any(re.search(route.pattern, candidate) for candidate in candidates)
        return route.pattern in incoming.to_number or route.pattern in incoming.from_number

    def _select_route(self, incoming: IncomingCall) -> Route:
        candidates = [
            route
            for route in self.get_routes(incoming.business_id)
            if route.is_active
        ]
        for route in candidates:
            if self._matches_pattern(route, incoming):
                return route
        if candidates:
            return candidates[0]
        default = self.routes.get(self.default_route_id) if self.default_route_id else None
        if default is not None:
            return default
        raise NoRouteAvailableError(f"No route available for call {incoming.call_id}")

    async def _open_session(self, route: Route, incoming: IncomingCall):
        call = await route.agent.handle_incoming_call(incoming, route_id=route.id)
        route.call_count += 1
        route.last_used = self.clock()
        logger.info(f"Routed call {incoming.call_id} to route {route.id}")
        return call

    # Reporting

    def get_call_history(self, limit: Optional[int] = None) -> List[IncomingCall]:
        history = list(reversed(self.call_history))
        return history[:limit] if limit is not None else history

    def get_routing_stats(self) -> RoutingStats:
        cutoff = self.clock() - timedelta(hours=24)
        return RoutingStats(
            total_routes=len(self.routes),
            active_routes=sum(1 for r in self.routes.values() if r.is_active),
            total_rules=len(self.rules),
            active_rules=sum(1 for r in self.rules if r.is_active),
            calls_last_24h=sum(1 for call in self.call_history if call.timestamp >= cutoff),
            route_distribution={route_id: r.call_count for route_id, r in self.routes.items()},
        )

    def get_route_utilization(self) -> List[Dict[str, Any]]:
        total = sum(r.call_count for r in self.routes.values())
        report = [
            {
                "route_id": route.id,
                "pattern": route.pattern,
                "call_count": route.call_count,
                "share": round(route.call_count / total * 100, 2) if total else 0.0,
                "last_used": route.last_used,
                "is_active": route.is_active,
            }
            for route in self.routes.values()
        ]
        return sorted(report, key=lambda row: row["call_count"], reverse=True)

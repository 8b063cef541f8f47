"""
Exception hierarchy for the callflow core.

Validation problems raise immediately with a typed error so that the HTTP layer
can map them onto status codes; per-turn failures inside a conversation are
caught by the components themselves and never reach the caller.
"""


class CallflowError(RuntimeError):
    """Base class for every error raised by the callflow core."""


class NotFoundError(CallflowError):
    """Raised when an identifier does not resolve to a known object."""

    kind = "object"

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"{self.kind.capitalize()} '{identifier}' not found")


class BusinessNotFoundError(NotFoundError):
    kind = "business"


class ConversationNotFoundError(NotFoundError):
    kind = "conversation"


class CallNotFoundError(NotFoundError):
    kind = "call"


class RouteNotFoundError(NotFoundError):
    kind = "route"


class RoutingRuleNotFoundError(NotFoundError):
    kind = "routing rule"


class WorkflowNotFoundError(NotFoundError):
    kind = "workflow"


class ExecutionNotFoundError(NotFoundError):
    kind = "execution"


class InvalidInputError(CallflowError, ValueError):
    """Raised for malformed input or an operation the current state forbids."""


class InvalidStateTransitionError(InvalidInputError):
    """Raised when a conversation or call is asked to move to a forbidden status."""

    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"Cannot move {entity} from '{current}' to '{target}'")


class ConversationClosedError(InvalidInputError):
    """Raised when a message is sent to a completed conversation."""


class InvalidRoutingRuleError(InvalidInputError):
    """Raised when a routing rule fails validation."""

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__("Invalid routing rule: " + "; ".join(self.errors))


class InvalidWorkflowError(InvalidInputError):
    """Raised when a workflow definition fails validation."""

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__("Invalid workflow: " + "; ".join(self.errors))


class WorkflowInactiveError(InvalidInputError):
    """Raised when an inactive workflow is asked to execute."""


class NoRouteAvailableError(CallflowError):
    """Raised when routing fails and no default route is registered."""


class MessagingError(CallflowError):
    """Raised when an outbound email, SMS or webhook delivery fails."""


class ContextRefreshError(CallflowError):
    """Raised when a business context snapshot could not be assembled."""

    def __init__(self, business_id: str, cause: Exception):
        self.business_id = business_id
        self.cause = cause
        super().__init__(f"Failed to refresh context for business '{business_id}': {cause}")

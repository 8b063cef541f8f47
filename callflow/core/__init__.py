"""
Core components of the call flow.

- context_cache: TTL cache of immutable business context snapshots
- intent_extractor: Rule-based intent, entity and sentiment extraction
- conversation_handler: Conversation lifecycle and per-turn processing
- phone_agent: Call lifecycle, audio turns, transfer decisions and metrics
- call_router: Routing rules and routes, the routing decision and its history
- workflow_actions / workflow_templates: Workflow action handlers and built-in workflows
- workflow_engine: Workflow registry, trigger evaluation and execution queue
- orchestrator: Builds the components and exposes the service operations
"""

"""
Data models for the call flow.

- business: Business profile and the business context snapshot
- conversation: Conversations, messages, intents and agent responses
- call: Phone calls, agent configuration, routes and routing rules
- workflow: Workflow definitions and executions
- message_schemas: Wire models of the call-stream WebSocket protocol

Models that are shared between concurrent readers (business context,
workflow definitions) are frozen; conversation and call state is mutated
only by its owning component.
"""

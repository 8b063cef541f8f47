"""
Callflow - call routing, conversational agents and workflow automation.

Callflow answers phone calls and chats for service businesses. Incoming calls
are routed to phone agents by a rule table, every caller or chat turn is
classified and answered with the current business context in hand, and
business events (a booked appointment, a captured lead, an emergency) start
workflows that send messages and write records.

Key Components:
- config: Application-wide constants and logging setup
- core: Context cache, intent extraction, conversations, phone agents,
  call routing, the workflow engine and the orchestrator tying them together
- handlers: Message handlers for the call-stream WebSocket protocol
- models: Pydantic models for business data, conversations, calls,
  workflows and the wire protocol
- services: Data provider, speech, messaging and WebSocket client adapters
- websocket_manager: Routes call-stream WebSocket messages to handlers
- api / main: The FastAPI application

Getting Started:
1. Set up environment variables (optionally in a .env file):
   - PORT / HOST: Where to serve (default 0.0.0.0:8000)
   - LOG_LEVEL: Logging level (default INFO)
   - BUSINESS_DATA_FILE: JSON file with business data; a demo business is
     seeded when unset
   - MESSAGING_RELAY_URL / MESSAGING_API_KEY: HTTP relay for email and SMS;
     messages are only logged when unset

2. Start the server:
   ```bash
   python run.py
   ```

3. Route a call with POST /api/calls, then drive it over /ws/calls.
"""

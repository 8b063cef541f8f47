"""
Adapters between the core and the outside world.

- business_data: Business data provider and record store protocols, with
  in-memory implementations
- speech: Speech codec protocol and the passthrough codec
- messaging: Outbound email/SMS/webhook providers (logging and HTTP relay)
- call_stream_client: WebSocket client for the call-stream protocol
"""

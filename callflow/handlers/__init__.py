"""
Handlers for the call-stream WebSocket protocol.

Each handler takes the raw message dict, the WebSocket and the orchestrator,
and returns the response model to send back:

- handle_call_answer: call.answer -> call.answered
- handle_audio_input: audio.input -> audio.reply
- handle_call_hold / handle_call_resume: -> call.status
- handle_call_end: call.end -> call.ended
"""

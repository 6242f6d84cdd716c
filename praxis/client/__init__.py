"""Python client for the Praxis tutoring gateway.

Modules:
- backoff: reconnect delay policy
- speech: push-to-talk state machine and playback controller
- render: quiz line and YouTube link extraction from replies
- session: VoiceClient driving the /ws protocol
- cli: `praxis-chat` text-mode entry point
"""

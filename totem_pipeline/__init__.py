"""
Realtime voice pipeline for the totem.

Streaming audio → transcription → knowledge search + LLM → speech synthesis.

- One CallOrchestrator per connected client; it owns its transcriber
  connection, timers and pending-utterance queue.
- Provider clients (Deepgram, Azure Search, Azure OpenAI, ElevenLabs) are
  created once per process and injected.
- All behavior is observable via structured events (observability.events).
"""

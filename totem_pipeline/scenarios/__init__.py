"""
Prompt scenarios for the totem assistant.

Each scenario defines:
- name: Scenario identifier
- system_prompt: System instructions for the LLM
- context_prefix: Label placed before the search context in the system prompt
- greeting_text: Fixed answer to a bare greeting
- greetings: Questions that count as a bare greeting
"""

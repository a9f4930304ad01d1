"""
Sub-task execution.

- registry.py: cancellation tokens, retry timers, spawned attempts
- scheduler.py: generate / run / retry / stop / delete state machine
"""

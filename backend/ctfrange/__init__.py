"""
CTF Range Orchestrator

Session orchestration, attacker sandboxes and event-sourced scoring
for capture-the-flag training ranges.
"""

__version__ = "1.0.0"

"""rangectl - admin CLI for the CTF Range Orchestrator."""

__version__ = "1.0.0"

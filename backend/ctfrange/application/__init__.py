"""
CTF Range Orchestrator - Application Services
"""

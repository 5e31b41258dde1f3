"""
Jobs Package

Relay engine: batch runner, continuation decisions, trigger handling,
watchdog and the per-stage adapters.
"""

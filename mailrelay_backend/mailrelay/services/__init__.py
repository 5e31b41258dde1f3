"""
Services Package

Persistence and provider clients shared by the relay jobs.
"""

"""Core components for StackPilot.

This module contains the foundational components including AWS session
management, configuration handling, cancellation, backoff and cleanup.
"""

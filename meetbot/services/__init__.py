"""
Service layer: calendar access, bot provider, webhook processing, scheduling.
"""

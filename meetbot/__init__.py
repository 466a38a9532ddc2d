"""
Meeting bot service: calendar-driven recording bots, webhook lifecycle
tracking and live transcripts.
"""

__version__ = "1.0.0"

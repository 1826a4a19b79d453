"""
Catchr: background enrichment for captured thoughts.

A queue-driven pipeline that provides:
- Non-blocking capture (text or voice)
- Transcription, LLM classification and tagging
- Opt-in calendar events from time-bound thoughts
"""

__version__ = "0.1.0"

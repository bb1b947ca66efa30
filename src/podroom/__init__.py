"""
Podroom

Podcast episode processing: transcription, adaptive transcript cleaning,
reports and cross-episode question answering.
"""

__version__ = "0.1.0"

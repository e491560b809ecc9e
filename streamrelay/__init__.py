"""
Stream Relay - fan one live input out to many destinations with FFmpeg.
"""

__version__ = "1.0.0"

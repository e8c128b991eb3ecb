"""Tikker - desktop client engine for a remote time-tracking server"""

__version__ = "0.1.0"

"""Session recording and audio mixing backend for the Sprach Tutor app."""

__version__ = "0.4.0"

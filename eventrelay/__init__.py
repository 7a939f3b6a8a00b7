"""
Chat Event Relay - event fan-out, delivery tracking and background task workers.
"""
__version__ = "1.0.0"

"""Guided exam authoring and timed quiz sessions over a push-event channel."""

__version__ = "1.0.0"

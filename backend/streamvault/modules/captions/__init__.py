"""Multilingual caption generation from a video's audio track."""

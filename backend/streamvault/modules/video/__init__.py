"""Uploaded video assets: intake, lookup and playback endpoints."""

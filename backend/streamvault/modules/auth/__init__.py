"""Bearer-token authentication of API and playback requests."""

"""HLS master playlist assembly."""

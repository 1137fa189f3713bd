"""Access-controlled HLS playback gateway."""

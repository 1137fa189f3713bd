"""HLS rendition encoding."""

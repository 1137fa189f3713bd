"""StreamVault: VOD transcoding pipeline and access-controlled HLS gateway."""

__version__ = "0.1.0"

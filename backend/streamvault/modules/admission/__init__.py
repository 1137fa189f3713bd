"""Per-user admission control for concurrent transcodes."""

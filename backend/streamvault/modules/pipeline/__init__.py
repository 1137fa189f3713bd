"""Per-asset transcoding pipeline: state machine, orchestration and launch."""

# =============================================================================
# Services Package — Client Logic
# =============================================================================
#   - endpoints.py: REST paths relative to the configured API base
#   - error_parser.py: Normalises every failure shape into a ParsedError
#   - rate_limiter.py: Per-query fetch spacing + failed-result cache
#   - file_registry.py: Cached filename → stored file lookup
#   - ingestion.py: Sequential upload + process with partial-failure tolerance
#   - stream.py: Pluggable status channels (SSE, in-memory)
#   - orchestrator.py: The facade callers use to submit and follow queries
# =============================================================================

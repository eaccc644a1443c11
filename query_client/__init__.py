# =============================================================================
# Agent Query Client
# =============================================================================
# Client-side orchestration for a remote multi-agent analysis service:
# attach documents, submit queries, follow their progress over Server-Sent
# Events, and turn every backend failure shape into one error taxonomy.
#
# Package structure:
#   query_client/
#   ├── config.py     → pydantic-settings configuration (env / .env)
#   ├── models/       → Pydantic V2 wire schemas and the error taxonomy
#   ├── services/     → Error parsing, rate limiting, ingestion, streams,
#   │                    file registry, and the submission orchestrator
#   └── cli.py        → `query-client` command-line entry point
# =============================================================================

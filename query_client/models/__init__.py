# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# - requests.py: Payloads sent to the analysis backend
# - responses.py: Submission responses, streamed status events, file records
# - errors.py: ParsedError taxonomy and the QueryError exception
# =============================================================================

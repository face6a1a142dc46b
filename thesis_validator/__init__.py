# =============================================================================
# Thesis Validator — Research Workflow Engine
# =============================================================================
# Decomposes an investment thesis into a hypothesis tree, gathers and scores
# evidence, hunts for contradictions and reports a confidence-weighted
# verdict. Runs as durable background jobs with a throttled progress stream.
#
# Package structure:
#   thesis_validator/
#   ├── agents/       → Workers (hypothesis builder, evidence gatherer,
#   │                    contradiction hunter, comparables finder,
#   │                    synthesizer) and the LangGraph conductor
#   ├── api/          → FastAPI route handlers (job submission, status,
#   │                    progress WebSocket)
#   ├── db/           → SQLAlchemy engine, session and ORM tables
#   ├── models/       → Pydantic V2 domain entities and API schemas
#   ├── services/     → Scoring, primary store, repositories, LLM,
#   │                    embeddings, capabilities, progress bus, job service
#   ├── workflows/    → Research and stress-test entry points
#   └── workers/      → Celery application and job tasks
# =============================================================================

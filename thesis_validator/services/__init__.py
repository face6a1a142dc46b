# =============================================================================
# Services Package — Scoring, Stores, Providers & Job Plumbing
# =============================================================================
#   - scoring.py: source credibility and cosine relevance (pure)
#   - llm.py / embedder.py: LLM providers, JSON helper, embeddings
#   - capabilities.py: search / financial / document / embedder protocols
#   - deal_memory.py: ChromaDB primary store
#   - repositories.py: SQLAlchemy ports + best-effort secondary writer
#   - progress.py: debounced progress events over Redis pub/sub
#   - rate_limiter.py: sliding-window submission limit
#   - jobs.py: job submission, lookup and cancellation
# =============================================================================

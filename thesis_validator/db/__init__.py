# =============================================================================
# Database Package
# =============================================================================
# Async SQLAlchemy engine, session management, and ORM tables.
#
# Key exports:
#   - async_session_factory / get_async_session: database sessions
#   - Base: SQLAlchemy declarative base for ORM models
#   - EngagementRecord, HypothesisRecord, HypothesisEdgeRecord,
#     EvidenceRecord, ContradictionRecord, ResearchJobRecord
# =============================================================================

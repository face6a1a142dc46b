# =============================================================================
# Models Package — Domain Entities & API Schemas
# =============================================================================
#   - hypothesis.py: HypothesisNode / HypothesisEdge / HypothesisTree
#   - evidence.py: EvidenceNode (content-derived identity), ContradictionNode
#   - jobs.py: Engagement, ResearchConfig / StressTestConfig, ResearchJob
#     with its forward-only status machine
#   - events.py: internal EngagementEvent and client-facing ProgressEvent
#   - requests.py / responses.py: API request and response bodies
#
# These are SEPARATE from the relational ORM tables (thesis_validator/db/).
# =============================================================================

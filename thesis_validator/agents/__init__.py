# =============================================================================
# Agents Package — Research Workers & Conductor
# =============================================================================
# One worker per research concern, all sharing base.WorkerContext:
#   - hypothesis_builder.py: thesis → hypothesis tree with initial confidence
#   - comparables_finder.py: analogous deals from institutional memory
#   - evidence_gatherer.py: multi-source evidence + confidence updates
#   - contradiction_hunter.py: adversarial search, bear case, vulnerability
#   - synthesizer.py: verdict, summary, expert transcript intake
#   - conductor.py: LangGraph phase graph over a WorkerId → Worker registry
# =============================================================================

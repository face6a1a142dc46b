# =============================================================================
# Workflows Package — Public Entry Points
# =============================================================================
#   - research.py: execute_research_workflow (full five-phase run)
#   - stress_test.py: execute_stress_test_workflow (adversarial sweep over
#     existing hypotheses with projected confidence)
#
# Both build a WorkerContext from injectable collaborators, so they run the
# same way inside a Celery task and in tests.
# =============================================================================

# =============================================================================
# Workers Package — Celery Job Execution
# =============================================================================
#   - celery_app.py: Celery application configuration (pool size, acks,
#     time limits, per-task rate limit)
#   - tasks.py: research / stress-test tasks, lease lock, heartbeat,
#     retry policy
#
# A research run takes minutes (dozens of LLM and search calls). The API
# creates the job record, enqueues the task and returns 202 immediately;
# clients poll the job or subscribe to its progress stream.
# =============================================================================

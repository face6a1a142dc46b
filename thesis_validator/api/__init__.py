# =============================================================================
# API Package — FastAPI Routers
# =============================================================================
#   - research.py: submit research / stress-test jobs, read and cancel
#     jobs, WebSocket progress stream
# =============================================================================

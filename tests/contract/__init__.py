"""
Contract tests for the Labwatch alert API.

These tests drive the FastAPI application in-process through TestClient and
check response shapes and status codes for success and error cases.

Test Categories:
- Health and thresholds endpoints
- Readings endpoint: evaluation results and alert changes
- Alerts endpoints: listing, filtering, acknowledge and resolve
- Notifications endpoint
- WebSocket stream

Usage:
    pytest tests/contract/ -m contract
"""

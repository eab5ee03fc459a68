"""API layer — FastAPI application exposing the gate, audit and secret surfaces."""

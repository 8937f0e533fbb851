"""HTTP API for the capture service."""

"""HTTP API for the commission settlement engine."""

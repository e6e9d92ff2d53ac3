"""HTTP API for OTW orders."""

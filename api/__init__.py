"""HTTP surface: liveness endpoints and process entrypoint."""

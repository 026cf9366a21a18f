"""Live connections: presence groups, event shapes and the WebSocket endpoint."""

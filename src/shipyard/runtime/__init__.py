"""Host-facing primitives: process execution, port allocation, polling and containers."""

"""HTTP and WebSocket transport for SwitchVault."""

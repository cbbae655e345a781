"""Session state, tool gating and configuration."""

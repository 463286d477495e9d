"""Data source gateway: authorized access to registered external databases."""

"""Role resolution and project membership policy."""

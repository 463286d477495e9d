"""HTTP surface for the data source gateway."""

"""Data access layer for the data source gateway.

Control-plane stores (connection credentials, resource hierarchy) and the scoped
pool, introspection and execution primitives used against registered databases.
"""

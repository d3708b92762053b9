"""
Shared utilities: error taxonomy, logging setup and the proxy pool.
"""

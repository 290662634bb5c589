"""
Domain modules: assets, progression, metadata, onchain, reconciliation.
"""

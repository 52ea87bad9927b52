"""
Certificate issuance pipeline

eligibility -> issuance -> outbox (pin / mint) with sweep and chain_sync
as re-entry points. Services are assembled in container.py.
"""

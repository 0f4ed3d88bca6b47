"""
Persistence — Run ledger and on-disk records.
"""

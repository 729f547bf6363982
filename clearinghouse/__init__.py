"""
Clearing House Transaction Workflow

Negotiation, validator quorum and status lifecycle for data-sharing
transactions, with every change written to a hash-chained audit ledger.
"""

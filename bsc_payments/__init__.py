"""
BSC Payments - ERC-20 payment reconciliation for BNB Smart Chain

Usage:
    from bsc_payments.chain import ChainClient
    from bsc_payments.reconcile import ReconciliationScanner
    from bsc_payments.orders import create_order, submit_transaction, get_status

Submodules are not imported here: importing bsc_payments.db opens (and creates)
the SQLite database under PAYMENTS_DATA_DIR.
"""

__version__ = "1.0.0"

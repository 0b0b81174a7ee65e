"""Command-line interface adapters.

Provides CLI commands for coordinating group orders:
- create, update, delete, show, list: group lifecycle
- join, leave, address, add-item, update-item, remove-item: membership
- lock, unlock, voucher, checkout, payment-result: settlement
- orders, order-status: fulfillment
- sweep, expire: manual expiry runs
"""

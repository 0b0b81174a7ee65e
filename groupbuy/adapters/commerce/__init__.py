"""Commerce platform adapters.

HTTP clients for the catalog (pricing and stock), voucher and address
services the group-buy core consumes as read-mostly boundaries.
"""

"""External adapters for the group-buy coordination service.

This package contains all external dependencies (SQLite, PostgreSQL,
commerce HTTP services, the realtime relay, HTTP servers, etc.) and
provides implementations of the core port interfaces.

Adapter Organization:

- store/: Adapters for group and settled order persistence (SQLite, PostgreSQL)
- commerce/: Adapters for pricing, vouchers and address books over HTTP
- payment/: Adapter for the payment gateway
- notification/: Adapters for realtime events (stdout, HTTP relay)
- scheduler/: Adapters for driving the expiry sweep (daemon, single run)
- cli/: Command-line interface and management commands
- webhook/: HTTP endpoints for clients and payment callbacks
"""

"""Test suite for the group-buy coordination service.

Organized into three categories:

1. core/: Unit tests for core domain logic
   - Minimal dependencies, fast execution
   - Uses in-memory fakes for ports

2. adapters/: Integration tests for adapter implementations
   - Tests against SQLite files, mocked HTTP transports and local servers
   - Validates adapter behavior and error handling

3. fakes/: Port implementations for testing
   - In-memory implementations of the store, pricing, voucher, address,
     payment, notification and sweep ports
   - Used by core unit tests
"""

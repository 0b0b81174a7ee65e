"""Fake/mock implementations of core ports for testing.

These in-memory implementations allow core domain logic to be tested
without external dependencies:

- FakeGroupOrderStore: In-memory group aggregate persistence
- FakeSettledOrderStore: In-memory settled order persistence
- FakePricingPort: Configurable unit prices and stock levels
- FakeVoucherPort: Canned voucher validations and recorded redemptions
- FakeAddressBookPort: In-memory address book
- FakePaymentGatewayPort: Configurable settlement outcomes
- FakeNotificationPort: Captured events for assertion
- FakeSweepPort: Captured sweep executions
- build_harness: Core services wired over the fakes above
"""

from .commerce import FakeAddressBookPort, FakePricingPort, FakeVoucherPort
from .harness import FakeClock, Harness, build_harness
from .notification import FakeNotificationPort
from .payment import FakePaymentGatewayPort
from .store import FakeGroupOrderStore, FakeSettledOrderStore
from .sweep import FakeSweepPort

__all__ = [
    "FakeAddressBookPort",
    "FakeClock",
    "FakeGroupOrderStore",
    "FakeNotificationPort",
    "FakePaymentGatewayPort",
    "FakePricingPort",
    "FakeSettledOrderStore",
    "FakeSweepPort",
    "FakeVoucherPort",
    "Harness",
    "build_harness",
]

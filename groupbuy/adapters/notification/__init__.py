"""Notification adapters for delivering group events to clients.

Implementations support multiple output channels:
- Stdout (terminal, one line per event)
- HTTP relay (realtime fan-out service)
"""

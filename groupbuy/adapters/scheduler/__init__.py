"""Scheduler adapters for driving the expiry sweep.

Implementations support multiple scheduling strategies:
- Daemon (asyncio event loop with configurable interval)
- Single run (cron or Kubernetes CronJob invoking the CLI sweep command)
"""

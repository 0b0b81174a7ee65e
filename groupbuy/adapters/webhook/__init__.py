"""Webhook receiver adapters.

Provides HTTP endpoints for external systems:
- Client applications driving group operations
- Payment gateway callbacks for hosted-redirect payments
- Manual expiry sweep triggers
"""

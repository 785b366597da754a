"""orderbridge — Shopify order webhooks to WhatsApp notifications."""

__version__ = "0.1.0"

"""Webhook inbound system.

Receives Shopify order webhooks and queues one WhatsApp notification per order.
Duplicate deliveries of the same order collapse onto one job.
"""

"""Messaging session lifecycle and transport clients."""

"""Notification job queue with retry and backoff."""

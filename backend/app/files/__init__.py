"""Attachment storage for chat messages."""

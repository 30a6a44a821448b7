"""Conversation data model."""

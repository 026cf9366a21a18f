"""Membership Manager for group conversations."""

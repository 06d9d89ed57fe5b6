"""Signature reminder scheduling."""

"""Signing material and session token helpers."""
